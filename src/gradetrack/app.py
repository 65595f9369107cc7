import logging
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from gradetrack.config.settings import settings
from gradetrack.core.errors import GradeTrackError
from gradetrack.core.gpa import RecordSummary, SemesterSummary
from gradetrack.core.grades import GradingScheme, override_for_grade
from gradetrack.core.models import DEFAULT_BRANCH, Semester, Subject, SubjectTemplate, semester_options
from gradetrack.core.whatif import WhatIfResult
from gradetrack.services.appwrite_service import (
    AppwriteService,
    AppwriteServiceError,
    AuthorizationError,
    NotFoundError,
)
from gradetrack.state.identity import Identity


logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="GradeTrack API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "INTERNAL_SERVER_ERROR"})


class SubjectPayload(BaseModel):
    name: str = ""
    credits: int
    continuous: Optional[float] = None
    midterm: Optional[float] = None
    final: Optional[float] = None
    assumed: List[str] = Field(default_factory=list)
    is_graded: bool = True
    override_grade: Optional[str] = None

    def to_subject(self) -> Subject:
        return Subject(
            name=self.name,
            credits=self.credits,
            continuous=self.continuous,
            midterm=self.midterm,
            final=self.final,
            assumed=frozenset(self.assumed),
            is_graded=self.is_graded,
            override=override_for_grade(self.override_grade) if self.override_grade else None,
        )


class SemesterPayload(BaseModel):
    title: str = ""
    year: int
    semester: int
    branch: str = DEFAULT_BRANCH
    subjects: Optional[List[SubjectPayload]] = None


class PredictionPayload(BaseModel):
    target_sgpa: float


class EvaluatePayload(BaseModel):
    subjects: List[SubjectPayload]
    scheme_id: Optional[str] = None


class SchemePayload(BaseModel):
    scheme_name: str
    grade_cutoffs: Dict[str, float]
    is_default: bool = False


class SchemeUpdatePayload(BaseModel):
    scheme_name: Optional[str] = None
    grade_cutoffs: Optional[Dict[str, float]] = None
    is_default: Optional[bool] = None


class TemplatePayload(BaseModel):
    subject_name: str
    default_credits: int
    year: int
    semester: int
    branch: str = DEFAULT_BRANCH
    grading_scheme_id: Optional[str] = None


class TemplateUpdatePayload(BaseModel):
    subject_name: Optional[str] = None
    default_credits: Optional[int] = None
    year: Optional[int] = None
    semester: Optional[int] = None
    branch: Optional[str] = None
    grading_scheme_id: Optional[str] = None


def get_service() -> AppwriteService:
    try:
        return AppwriteService.from_settings()
    except AppwriteServiceError as exc:
        logger.error("Appwrite service unavailable: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc


def _required_uid(x_user_id: Optional[str]) -> str:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-user-id header")
    return x_user_id


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


SERVICE_ERRORS = (GradeTrackError, AppwriteServiceError)


def _identity(service: AppwriteService, x_user_id: Optional[str]) -> Identity:
    uid = _required_uid(x_user_id)
    try:
        return service.get_identity(uid)
    except AppwriteServiceError as exc:
        raise _http_error(exc) from exc


def _scheme_out(scheme: GradingScheme) -> Dict:
    return {
        "id": scheme.id,
        "scheme_name": scheme.name,
        "grade_cutoffs": dict(scheme.cutoffs),
        "is_default": scheme.is_default,
    }


def _template_out(template: SubjectTemplate) -> Dict:
    return {
        "id": template.id,
        "subject_name": template.subject_name,
        "default_credits": template.default_credits,
        "year": template.year,
        "semester": template.term,
        "branch": template.branch,
        "grading_scheme_id": template.grading_scheme_id,
    }


def _summary_out(summary: SemesterSummary, subjects: List[Subject]) -> Dict:
    return {
        "sgpa": summary.sgpa_display,
        "credits_for_gpa": summary.credits_for_gpa,
        "total_credits": summary.total_credits,
        "subjects": [
            {
                "id": subject.id,
                "name": subject.name,
                "credits": subject.credits,
                "continuous": subject.continuous,
                "midterm": subject.midterm,
                "final": subject.final,
                "assumed": sorted(subject.assumed),
                "is_graded": subject.is_graded,
                "total": evaluation.total,
                "grade": evaluation.grade,
                "display_grade": evaluation.display_grade,
                "points": evaluation.points,
                "is_overridden": evaluation.is_overridden,
            }
            for subject, evaluation in zip(subjects, summary.evaluations)
        ],
    }


def _semester_out(semester: Semester, summary: Optional[SemesterSummary] = None) -> Dict:
    row = {
        "id": semester.id,
        "semester_title": semester.title,
        "year": semester.year,
        "semester": semester.term,
        "branch": semester.branch,
        "calculated_sgpa": round(semester.sgpa, 2) if semester.sgpa is not None else None,
        "total_credits": semester.total_credits,
        "created_at": semester.created_at.isoformat() if semester.created_at else None,
    }
    if summary is not None:
        row.update(_summary_out(summary, semester.subjects))
    return row


def _prediction_out(result: WhatIfResult) -> Dict:
    return {
        "target_sgpa": result.target_sgpa,
        "required_average_points": result.required_average_points,
        "required_average": result.required_mark,
        "is_achievable": result.is_achievable,
        "current_progress": {
            "secured_points": result.secured_points,
            "total_secured_credits": result.secured_credits,
            "remaining_credits": result.remaining_credits,
        },
        "target_subjects": [
            {
                "subject_name": target.subject_name,
                "credits": target.credits,
                "required_marks": target.required_final,
                "unclamped_required_marks": target.unclamped_required_final,
                "feasible": target.feasible,
            }
            for target in result.targets
        ],
    }


def _record_out(summary: RecordSummary) -> Dict:
    return {
        "cgpa": summary.cgpa_display,
        "total_credits": summary.total_credits,
        "latest_sgpa": summary.latest_sgpa_display,
        "semester_count": summary.semester_count,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/semester-options")
def get_semester_options(year: int) -> Dict:
    return {"year": year, "semesters": semester_options(year)}


@app.get("/schemes")
def list_schemes(
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> List[Dict]:
    _required_uid(x_user_id)
    try:
        return [_scheme_out(scheme) for scheme in service.list_grading_schemes()]
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post("/schemes")
def create_scheme(
    payload: SchemePayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    identity = _identity(service, x_user_id)
    try:
        scheme = service.create_grading_scheme(
            identity,
            payload.scheme_name,
            payload.grade_cutoffs,
            is_default=payload.is_default,
        )
        return _scheme_out(scheme)
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.patch("/schemes/{scheme_id}")
def update_scheme(
    scheme_id: str,
    payload: SchemeUpdatePayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    identity = _identity(service, x_user_id)
    changes = {}
    if payload.scheme_name is not None:
        changes["name"] = payload.scheme_name
    if payload.grade_cutoffs is not None:
        changes["cutoffs"] = payload.grade_cutoffs
    if payload.is_default is not None:
        changes["is_default"] = payload.is_default
    try:
        return _scheme_out(service.update_grading_scheme(identity, scheme_id, **changes))
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.delete("/schemes/{scheme_id}")
def delete_scheme(
    scheme_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict[str, str]:
    identity = _identity(service, x_user_id)
    try:
        service.delete_grading_scheme(identity, scheme_id)
        return {"status": "deleted"}
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.get("/templates")
def list_templates(
    year: Optional[int] = None,
    semester: Optional[int] = None,
    branch: Optional[str] = None,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> List[Dict]:
    _required_uid(x_user_id)
    try:
        return [_template_out(t) for t in service.list_templates(year=year, term=semester, branch=branch)]
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post("/templates")
def create_template(
    payload: TemplatePayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    identity = _identity(service, x_user_id)
    template = SubjectTemplate(
        subject_name=payload.subject_name,
        default_credits=payload.default_credits,
        year=payload.year,
        term=payload.semester,
        branch=payload.branch,
        grading_scheme_id=payload.grading_scheme_id,
    )
    try:
        return _template_out(service.create_template(identity, template))
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.patch("/templates/{template_id}")
def update_template(
    template_id: str,
    payload: TemplateUpdatePayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    identity = _identity(service, x_user_id)
    changes = {
        name: value
        for name, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or name == "grading_scheme_id"
    }
    if "semester" in changes:
        changes["term"] = changes.pop("semester")
    try:
        return _template_out(service.update_template(identity, template_id, **changes))
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.delete("/templates/{template_id}")
def delete_template(
    template_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict[str, str]:
    identity = _identity(service, x_user_id)
    try:
        service.delete_template(identity, template_id)
        return {"status": "deleted"}
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.get("/semesters")
def list_semesters(
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> List[Dict]:
    uid = _required_uid(x_user_id)
    try:
        return [_semester_out(semester) for semester in service.list_semesters(uid)]
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post("/semesters")
def create_semester(
    payload: SemesterPayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    uid = _required_uid(x_user_id)
    try:
        subjects = [item.to_subject() for item in payload.subjects] if payload.subjects else None
        semester, summary = service.create_semester(
            uid,
            year=payload.year,
            term=payload.semester,
            branch=payload.branch,
            title=payload.title,
            subjects=subjects,
        )
        return _semester_out(semester, summary)
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.get("/semesters/{semester_id}")
def get_semester(
    semester_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    uid = _required_uid(x_user_id)
    try:
        semester = service.get_semester(uid, semester_id)
        _, summary = service.evaluate(semester.subjects)
        return _semester_out(semester, summary)
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.put("/semesters/{semester_id}")
def save_semester(
    semester_id: str,
    payload: SemesterPayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    uid = _required_uid(x_user_id)
    try:
        semester = Semester(
            title=payload.title,
            year=payload.year,
            term=payload.semester,
            branch=payload.branch,
            subjects=[item.to_subject() for item in payload.subjects or []],
            id=semester_id,
        )
        saved, summary = service.save_semester(uid, semester)
        return _semester_out(saved, summary)
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.delete("/semesters/{semester_id}")
def delete_semester(
    semester_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict[str, str]:
    uid = _required_uid(x_user_id)
    try:
        service.delete_semester(uid, semester_id)
        return {"status": "deleted"}
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post("/semesters/{semester_id}/reset")
def reset_semester(
    semester_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    uid = _required_uid(x_user_id)
    try:
        semester, summary = service.reset_to_template(uid, semester_id)
        return _semester_out(semester, summary)
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.delete("/semesters/{semester_id}/subjects/{mark_id}")
def delete_subject(
    semester_id: str,
    mark_id: str,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    uid = _required_uid(x_user_id)
    try:
        summary = service.delete_subject(uid, semester_id, mark_id)
        return {
            "status": "deleted",
            "sgpa": summary.sgpa_display,
            "total_credits": summary.total_credits,
        }
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post("/semesters/{semester_id}/predict")
def predict(
    semester_id: str,
    payload: PredictionPayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    uid = _required_uid(x_user_id)
    try:
        return _prediction_out(service.predict(uid, semester_id, payload.target_sgpa))
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.post("/evaluate")
def evaluate(
    payload: EvaluatePayload,
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    _required_uid(x_user_id)
    try:
        subjects = [item.to_subject() for item in payload.subjects]
        scheme, summary = service.evaluate(subjects, payload.scheme_id)
        return {"scheme": _scheme_out(scheme), **_summary_out(summary, subjects)}
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc


@app.get("/record")
def get_record(
    x_user_id: Optional[str] = Header(default=None),
    service: AppwriteService = Depends(get_service),
) -> Dict:
    uid = _required_uid(x_user_id)
    try:
        return _record_out(service.record_summary(uid))
    except SERVICE_ERRORS as exc:
        raise _http_error(exc) from exc
