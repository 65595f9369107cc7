from dataclasses import replace
from datetime import datetime, timezone
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from appwrite.client import Client
from appwrite.exception import AppwriteException
from appwrite.id import ID
from appwrite.query import Query
from appwrite.services.databases import Databases

from gradetrack.config.settings import settings
from gradetrack.core.errors import ConfigurationError
from gradetrack.core.gpa import RecordSummary, SemesterSummary, summarize_record, summarize_semester
from gradetrack.core.grades import DEFAULT_SCHEME, GRADE_POINTS, PASS_FAIL_POINTS, GradingScheme
from gradetrack.core.models import (
    DEFAULT_BRANCH,
    ManualOverride,
    Semester,
    Subject,
    SubjectTemplate,
    default_semester_title,
    subjects_from_templates,
    validate_year_term,
)
from gradetrack.core.whatif import WhatIfResult, solve_target
from gradetrack.state.identity import STUDENT_ROLE, Identity

logger = logging.getLogger(__name__)

LIST_LIMIT = 100

# Column prefixes used by the marks collection for each component.
COMPONENT_COLUMNS: Dict[str, str] = {
    "continuous": "cws",
    "midterm": "mte",
    "final": "ete",
}


class AppwriteServiceError(Exception):
    pass


class NotFoundError(AppwriteServiceError):
    pass


class AuthorizationError(AppwriteServiceError):
    pass


class AppwriteService:
    def __init__(
        self,
        endpoint: str,
        project_id: str,
        api_key: str,
        database_id: str,
        profiles_collection_id: str,
        schemes_collection_id: str,
        templates_collection_id: str,
        semesters_collection_id: str,
        marks_collection_id: str,
        db: Optional[Databases] = None,
    ) -> None:
        if not endpoint:
            raise AppwriteServiceError("Missing APPWRITE_ENDPOINT in environment")
        if not project_id:
            raise AppwriteServiceError("Missing APPWRITE_PROJECT_ID in environment")
        if not api_key:
            raise AppwriteServiceError("Missing APPWRITE_API_KEY in environment")
        if not database_id:
            raise AppwriteServiceError("Missing APPWRITE_DATABASE_ID in environment")

        self.database_id = database_id
        self.profiles_collection_id = profiles_collection_id
        self.schemes_collection_id = schemes_collection_id
        self.templates_collection_id = templates_collection_id
        self.semesters_collection_id = semesters_collection_id
        self.marks_collection_id = marks_collection_id

        if db is None:
            client = Client()
            client.set_endpoint(endpoint.rstrip("/"))
            client.set_project(project_id)
            client.set_key(api_key)
            db = Databases(client)

        self.db = db

    @classmethod
    def from_settings(cls) -> "AppwriteService":
        return cls(
            endpoint=settings.appwrite_endpoint,
            project_id=settings.appwrite_project_id,
            api_key=settings.appwrite_api_key,
            database_id=settings.appwrite_database_id,
            profiles_collection_id=settings.appwrite_profiles_collection_id,
            schemes_collection_id=settings.appwrite_schemes_collection_id,
            templates_collection_id=settings.appwrite_templates_collection_id,
            semesters_collection_id=settings.appwrite_semesters_collection_id,
            marks_collection_id=settings.appwrite_marks_collection_id,
        )

    @staticmethod
    def _to_iso(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    @staticmethod
    def _from_iso(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None

    def _list_documents(self, collection_id: str, queries: List[str]) -> List[Dict]:
        try:
            result = self.db.list_documents(self.database_id, collection_id, queries=queries)
            return list(result.get("documents", []))
        except AppwriteException as exc:
            raise AppwriteServiceError(str(exc)) from exc

    def _create_document(self, collection_id: str, data: Dict, document_id: Optional[str] = None) -> Dict:
        try:
            return self.db.create_document(
                self.database_id,
                collection_id,
                document_id or ID.unique(),
                data,
            )
        except AppwriteException as exc:
            raise AppwriteServiceError(str(exc)) from exc

    def _get_document(self, collection_id: str, document_id: str) -> Dict:
        try:
            return self.db.get_document(self.database_id, collection_id, document_id)
        except AppwriteException as exc:
            if getattr(exc, "code", None) == 404:
                raise NotFoundError(f"Document {document_id} not found.") from exc
            raise AppwriteServiceError(str(exc)) from exc

    def _update_document(self, collection_id: str, document_id: str, data: Dict) -> Dict:
        try:
            return self.db.update_document(self.database_id, collection_id, document_id, data)
        except AppwriteException as exc:
            raise AppwriteServiceError(str(exc)) from exc

    def _delete_document(self, collection_id: str, document_id: str) -> None:
        try:
            self.db.delete_document(self.database_id, collection_id, document_id)
        except AppwriteException as exc:
            raise AppwriteServiceError(str(exc)) from exc

    def _find_first(self, collection_id: str, queries: List[str]) -> Optional[Dict]:
        docs = self._list_documents(collection_id, [*queries, Query.limit(1)])
        if not docs:
            return None
        return docs[0]

    # Identity

    def get_profile(self, uid: str) -> Dict:
        try:
            return self.db.get_document(self.database_id, self.profiles_collection_id, uid)
        except AppwriteException as exc:
            if getattr(exc, "code", None) == 404:
                return {}
            raise AppwriteServiceError(str(exc)) from exc

    def get_identity(self, uid: str) -> Identity:
        profile = self.get_profile(uid)
        return Identity(uid=uid, role=str(profile.get("role") or STUDENT_ROLE))

    @staticmethod
    def _require_admin(identity: Identity) -> None:
        if not identity.is_admin:
            raise AuthorizationError("Admin privileges required.")

    # Grading schemes

    @staticmethod
    def _scheme_from_doc(doc: Dict) -> GradingScheme:
        cutoffs = doc.get("grade_cutoffs")
        if isinstance(cutoffs, str):
            try:
                cutoffs = json.loads(cutoffs)
            except ValueError as exc:
                raise ConfigurationError(f"Grading scheme {doc.get('$id')} has unreadable cutoffs") from exc
        return GradingScheme(
            name=str(doc.get("scheme_name", "")),
            cutoffs=cutoffs or {},
            is_default=bool(doc.get("is_default")),
            id=doc.get("$id"),
        )

    @staticmethod
    def _scheme_to_doc(scheme: GradingScheme) -> Dict:
        return {
            "scheme_name": scheme.name,
            "grade_cutoffs": json.dumps(dict(scheme.cutoffs)),
            "is_default": scheme.is_default,
        }

    def list_grading_schemes(self) -> List[GradingScheme]:
        docs = self._list_documents(self.schemes_collection_id, [Query.limit(LIST_LIMIT)])
        schemes = [self._scheme_from_doc(doc) for doc in docs]
        schemes.sort(key=lambda scheme: not scheme.is_default)
        return schemes

    def get_grading_scheme(self, scheme_id: str) -> GradingScheme:
        return self._scheme_from_doc(self._get_document(self.schemes_collection_id, scheme_id))

    def default_scheme(self) -> GradingScheme:
        doc = self._find_first(self.schemes_collection_id, [Query.equal("is_default", [True])])
        if not doc:
            return DEFAULT_SCHEME
        return self._scheme_from_doc(doc)

    def resolve_scheme(self, scheme_id: Optional[str] = None) -> GradingScheme:
        if scheme_id:
            return self.get_grading_scheme(scheme_id)
        return self.default_scheme()

    def _clear_default_schemes(self, keep_id: Optional[str] = None) -> None:
        docs = self._list_documents(
            self.schemes_collection_id,
            [Query.equal("is_default", [True]), Query.limit(LIST_LIMIT)],
        )
        for doc in docs:
            if doc["$id"] != keep_id:
                self._update_document(self.schemes_collection_id, doc["$id"], {"is_default": False})

    def create_grading_scheme(
        self,
        identity: Identity,
        name: str,
        cutoffs: Mapping[str, float],
        is_default: bool = False,
    ) -> GradingScheme:
        self._require_admin(identity)
        scheme = GradingScheme(name=name, cutoffs=cutoffs, is_default=is_default)
        if is_default:
            self._clear_default_schemes()
        doc = self._create_document(self.schemes_collection_id, self._scheme_to_doc(scheme))
        logger.info("Grading scheme %s created by %s", doc["$id"], identity.uid)
        return replace(scheme, id=doc["$id"])

    def update_grading_scheme(self, identity: Identity, scheme_id: str, **changes: Any) -> GradingScheme:
        self._require_admin(identity)
        scheme = replace(self.get_grading_scheme(scheme_id), **changes)
        if scheme.is_default:
            self._clear_default_schemes(keep_id=scheme_id)
        self._update_document(self.schemes_collection_id, scheme_id, self._scheme_to_doc(scheme))
        logger.info("Grading scheme %s updated by %s", scheme_id, identity.uid)
        return scheme

    def delete_grading_scheme(self, identity: Identity, scheme_id: str) -> None:
        self._require_admin(identity)
        self._get_document(self.schemes_collection_id, scheme_id)
        self._delete_document(self.schemes_collection_id, scheme_id)
        logger.info("Grading scheme %s deleted by %s", scheme_id, identity.uid)

    # Subject templates

    @staticmethod
    def _template_from_doc(doc: Dict) -> SubjectTemplate:
        return SubjectTemplate(
            subject_name=str(doc.get("subject_name", "")),
            default_credits=int(doc.get("default_credits", 0)),
            year=int(doc.get("year", 0)),
            term=int(doc.get("semester", 0)),
            branch=str(doc.get("branch") or DEFAULT_BRANCH),
            grading_scheme_id=doc.get("grading_scheme_id"),
            id=doc.get("$id"),
        )

    @staticmethod
    def _template_to_doc(template: SubjectTemplate) -> Dict:
        return {
            "subject_name": template.subject_name,
            "default_credits": template.default_credits,
            "year": template.year,
            "semester": template.term,
            "branch": template.branch,
            "grading_scheme_id": template.grading_scheme_id,
        }

    @staticmethod
    def _validate_template(template: SubjectTemplate) -> None:
        # Building the seed subject runs the credit checks.
        template.to_subject()
        validate_year_term(template.year, template.term)

    def list_templates(
        self,
        year: Optional[int] = None,
        term: Optional[int] = None,
        branch: Optional[str] = None,
    ) -> List[SubjectTemplate]:
        queries = [Query.limit(LIST_LIMIT)]
        if year is not None:
            queries.append(Query.equal("year", [year]))
        if term is not None:
            queries.append(Query.equal("semester", [term]))
        if branch:
            queries.append(Query.equal("branch", [branch]))

        templates = [self._template_from_doc(doc) for doc in self._list_documents(self.templates_collection_id, queries)]
        templates.sort(key=lambda t: (t.year, t.term, t.branch))
        return templates

    def create_template(self, identity: Identity, template: SubjectTemplate) -> SubjectTemplate:
        self._require_admin(identity)
        self._validate_template(template)
        doc = self._create_document(self.templates_collection_id, self._template_to_doc(template))
        logger.info("Subject template %s created by %s", doc["$id"], identity.uid)
        return replace(template, id=doc["$id"])

    def update_template(self, identity: Identity, template_id: str, **changes: Any) -> SubjectTemplate:
        self._require_admin(identity)
        current = self._template_from_doc(self._get_document(self.templates_collection_id, template_id))
        template = replace(current, **changes)
        self._validate_template(template)
        self._update_document(self.templates_collection_id, template_id, self._template_to_doc(template))
        logger.info("Subject template %s updated by %s", template_id, identity.uid)
        return template

    def delete_template(self, identity: Identity, template_id: str) -> None:
        self._require_admin(identity)
        self._get_document(self.templates_collection_id, template_id)
        self._delete_document(self.templates_collection_id, template_id)
        logger.info("Subject template %s deleted by %s", template_id, identity.uid)

    # Semesters and subject marks

    @staticmethod
    def _subject_from_doc(doc: Dict) -> Subject:
        assumed_raw = doc.get("assumed_marks")
        if isinstance(assumed_raw, str) and assumed_raw:
            try:
                assumed_raw = json.loads(assumed_raw)
            except ValueError:
                assumed_raw = {}
        if not isinstance(assumed_raw, dict):
            assumed_raw = {}

        override = None
        overridden_grade = doc.get("overridden_grade")
        if overridden_grade:
            points = doc.get("overridden_points")
            if points is None:
                points = GRADE_POINTS.get(overridden_grade, PASS_FAIL_POINTS.get(overridden_grade, 0))
            override = ManualOverride(grade=str(overridden_grade), points=float(points))

        return Subject(
            name=str(doc.get("subject_name", "")),
            credits=int(doc.get("credits", 0)),
            continuous=doc.get("cws_mark"),
            midterm=doc.get("mte_mark"),
            final=doc.get("ete_mark"),
            assumed=frozenset(
                name for name, column in COMPONENT_COLUMNS.items() if assumed_raw.get(column)
            ),
            is_graded=doc.get("is_graded") is not False,
            override=override,
            id=doc.get("$id"),
        )

    @staticmethod
    def _subject_to_doc(semester_id: str, position: int, subject: Subject) -> Dict:
        return {
            "semester_id": semester_id,
            "position": position,
            "subject_name": subject.name,
            "credits": subject.credits,
            "cws_mark": subject.continuous,
            "mte_mark": subject.midterm,
            "ete_mark": subject.final,
            "assumed_marks": json.dumps(
                {column: name in subject.assumed for name, column in COMPONENT_COLUMNS.items()}
            ),
            "is_graded": subject.is_graded,
            "overridden_grade": subject.override.grade if subject.override else None,
            "overridden_points": subject.override.points if subject.override else None,
        }

    def _semester_from_doc(self, doc: Dict, subjects: Optional[List[Subject]] = None) -> Semester:
        sgpa = doc.get("calculated_sgpa")
        total_credits = doc.get("total_credits")
        return Semester(
            title=str(doc.get("semester_title", "")),
            year=int(doc.get("year", 0)),
            term=int(doc.get("semester", 0)),
            branch=str(doc.get("branch") or DEFAULT_BRANCH),
            subjects=subjects or [],
            id=doc.get("$id"),
            sgpa=float(sgpa) if sgpa is not None else None,
            total_credits=int(total_credits) if total_credits is not None else None,
            created_at=self._from_iso(doc.get("created_at")),
        )

    def _owned_semester_doc(self, uid: str, semester_id: str) -> Dict:
        doc = self._find_first(
            self.semesters_collection_id,
            [
                Query.equal("$id", [semester_id]),
                Query.equal("user_id", [uid]),
            ],
        )
        if not doc:
            raise NotFoundError("Semester not found.")
        return doc

    def _mark_documents(self, semester_id: str) -> List[Dict]:
        return self._list_documents(
            self.marks_collection_id,
            [
                Query.equal("semester_id", [semester_id]),
                Query.limit(LIST_LIMIT),
            ],
        )

    def list_semesters(self, uid: str) -> List[Semester]:
        docs = self._list_documents(
            self.semesters_collection_id,
            [
                Query.equal("user_id", [uid]),
                Query.order_desc("year"),
                Query.order_desc("semester"),
                Query.limit(LIST_LIMIT),
            ],
        )
        return [self._semester_from_doc(doc) for doc in docs]

    def list_subjects(self, semester_id: str) -> List[Subject]:
        docs = self._mark_documents(semester_id)
        docs.sort(key=lambda doc: doc.get("position") or 0)
        return [self._subject_from_doc(doc) for doc in docs]

    def template_subjects(self, year: int, term: int, branch: str) -> List[Subject]:
        return subjects_from_templates(self.list_templates(year=year, term=term, branch=branch))

    def get_semester(self, uid: str, semester_id: str) -> Semester:
        doc = self._owned_semester_doc(uid, semester_id)
        semester = self._semester_from_doc(doc, self.list_subjects(semester_id))
        if not semester.subjects:
            semester.subjects = self.template_subjects(semester.year, semester.term, semester.branch)
        return semester

    def save_semester(
        self,
        uid: str,
        semester: Semester,
        scheme: Optional[GradingScheme] = None,
    ) -> Tuple[Semester, SemesterSummary]:
        validate_year_term(semester.year, semester.term)
        scheme = scheme or self.default_scheme()
        summary = summarize_semester(semester.subjects, scheme)

        payload = {
            "user_id": uid,
            "semester_title": semester.title or default_semester_title(semester.year, semester.term),
            "year": semester.year,
            "semester": semester.term,
            "branch": semester.branch,
            "calculated_sgpa": summary.sgpa,
            "total_credits": summary.total_credits,
        }

        if semester.id:
            self._owned_semester_doc(uid, semester.id)
            semester_id = semester.id
        else:
            payload["created_at"] = self._to_iso(datetime.now(timezone.utc))
            doc = self._create_document(self.semesters_collection_id, payload)
            semester_id = doc["$id"]

        previous_marks = self._mark_documents(semester_id)

        # Old rows are removed only once every new row is stored.
        stored_subjects = []
        try:
            for position, subject in enumerate(semester.subjects):
                created = self._create_document(
                    self.marks_collection_id,
                    self._subject_to_doc(semester_id, position, subject),
                )
                stored_subjects.append(replace(subject, id=created["$id"]))
        except AppwriteServiceError:
            logger.exception("Saving subjects for semester %s failed, rolling back new rows", semester_id)
            for subject in stored_subjects:
                self._delete_document(self.marks_collection_id, subject.id)
            raise

        for existing in previous_marks:
            self._delete_document(self.marks_collection_id, existing["$id"])
        if semester.id:
            doc = self._update_document(self.semesters_collection_id, semester_id, payload)

        logger.info(
            "Semester %s saved for %s: %d subjects, sgpa=%.2f",
            semester_id,
            uid,
            len(stored_subjects),
            summary.sgpa,
        )
        saved = self._semester_from_doc(doc, stored_subjects)
        saved.sgpa = summary.sgpa
        saved.total_credits = summary.total_credits
        return saved, summary

    def create_semester(
        self,
        uid: str,
        *,
        year: int,
        term: int,
        branch: str = DEFAULT_BRANCH,
        title: str = "",
        subjects: Optional[Sequence[Subject]] = None,
    ) -> Tuple[Semester, SemesterSummary]:
        validate_year_term(year, term)
        if not subjects:
            subjects = self.template_subjects(year, term, branch)
        semester = Semester(
            title=title or default_semester_title(year, term),
            year=year,
            term=term,
            branch=branch,
            subjects=list(subjects),
        )
        return self.save_semester(uid, semester)

    def reset_to_template(self, uid: str, semester_id: str) -> Tuple[Semester, SemesterSummary]:
        semester = self._semester_from_doc(self._owned_semester_doc(uid, semester_id))
        semester.subjects = self.template_subjects(semester.year, semester.term, semester.branch)
        return self.save_semester(uid, semester)

    def delete_semester(self, uid: str, semester_id: str) -> None:
        self._owned_semester_doc(uid, semester_id)
        for mark in self._mark_documents(semester_id):
            self._delete_document(self.marks_collection_id, mark["$id"])
        self._delete_document(self.semesters_collection_id, semester_id)
        logger.info("Semester %s deleted for %s", semester_id, uid)

    def delete_subject(self, uid: str, semester_id: str, mark_id: str) -> SemesterSummary:
        self._owned_semester_doc(uid, semester_id)
        mark = self._find_first(
            self.marks_collection_id,
            [
                Query.equal("$id", [mark_id]),
                Query.equal("semester_id", [semester_id]),
            ],
        )
        if not mark:
            raise NotFoundError("Subject not found.")
        self._delete_document(self.marks_collection_id, mark_id)

        summary = summarize_semester(self.list_subjects(semester_id), self.default_scheme())
        self._update_document(
            self.semesters_collection_id,
            semester_id,
            {"calculated_sgpa": summary.sgpa, "total_credits": summary.total_credits},
        )
        return summary

    def evaluate(
        self,
        subjects: Sequence[Subject],
        scheme_id: Optional[str] = None,
    ) -> Tuple[GradingScheme, SemesterSummary]:
        scheme = self.resolve_scheme(scheme_id)
        return scheme, summarize_semester(subjects, scheme)

    def predict(self, uid: str, semester_id: str, target_sgpa: float) -> WhatIfResult:
        semester = self.get_semester(uid, semester_id)
        return solve_target(target_sgpa, semester.subjects, self.default_scheme())

    def record_summary(self, uid: str) -> RecordSummary:
        docs = self._list_documents(
            self.semesters_collection_id,
            [
                Query.equal("user_id", [uid]),
                Query.order_desc("created_at"),
                Query.limit(LIST_LIMIT),
            ],
        )

        semester_results = []
        for doc in docs:
            sgpa = doc.get("calculated_sgpa")
            if sgpa is None:
                continue
            semester_results.append((float(sgpa), int(doc.get("total_credits") or 0)))

        return summarize_record(semester_results)
