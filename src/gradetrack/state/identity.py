from dataclasses import dataclass


ADMIN_ROLE = "admin"
STUDENT_ROLE = "student"


@dataclass(frozen=True)
class Identity:
    uid: str
    role: str = STUDENT_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE
