from dataclasses import dataclass
import os
from dotenv import load_dotenv


load_dotenv()


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    appwrite_endpoint: str = os.getenv("APPWRITE_ENDPOINT", "")
    appwrite_project_id: str = os.getenv("APPWRITE_PROJECT_ID", "")
    appwrite_api_key: str = os.getenv("APPWRITE_API_KEY") or os.getenv("APPWRITE_FUNCTION_API_KEY", "")
    appwrite_database_id: str = os.getenv("APPWRITE_DATABASE_ID", "")

    appwrite_profiles_collection_id: str = os.getenv("APPWRITE_PROFILES_COLLECTION_ID", "profiles")
    appwrite_schemes_collection_id: str = os.getenv("APPWRITE_SCHEMES_COLLECTION_ID", "grading_schemes")
    appwrite_templates_collection_id: str = os.getenv("APPWRITE_TEMPLATES_COLLECTION_ID", "admin_subject_templates")
    appwrite_semesters_collection_id: str = os.getenv("APPWRITE_SEMESTERS_COLLECTION_ID", "student_semesters")
    appwrite_marks_collection_id: str = os.getenv("APPWRITE_MARKS_COLLECTION_ID", "student_subject_marks")

    cors_allowed_origins: tuple[str, ...] = _split_csv(
        os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    )

    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
