import json
import unittest
from unittest.mock import MagicMock

from appwrite.exception import AppwriteException

from gradetrack.core.errors import ConfigurationError, ValidationError
from gradetrack.core.grades import DEFAULT_SCHEME, override_for_grade
from gradetrack.core.models import Semester, Subject, SubjectTemplate
from gradetrack.services.appwrite_service import (
    AppwriteService,
    AppwriteServiceError,
    AuthorizationError,
    NotFoundError,
)
from gradetrack.state.identity import Identity


ADMIN = Identity(uid="admin-1", role="admin")
STUDENT = Identity(uid="user-1")


def _documents(*docs):
    return {"total": len(docs), "documents": list(docs)}


def _make_service(db):
    return AppwriteService(
        endpoint="https://appwrite.test/v1",
        project_id="project",
        api_key="key",
        database_id="db",
        profiles_collection_id="profiles",
        schemes_collection_id="schemes",
        templates_collection_id="templates",
        semesters_collection_id="semesters",
        marks_collection_id="marks",
        db=db,
    )


def _echo_create(database_id, collection_id, document_id, data):
    _echo_create.counter += 1
    return {"$id": f"{collection_id}-{_echo_create.counter}", **data}


_echo_create.counter = 0


class ServiceConfigTests(unittest.TestCase):
    def test_missing_credentials(self):
        with self.assertRaises(AppwriteServiceError):
            AppwriteService(
                endpoint="",
                project_id="project",
                api_key="key",
                database_id="db",
                profiles_collection_id="profiles",
                schemes_collection_id="schemes",
                templates_collection_id="templates",
                semesters_collection_id="semesters",
                marks_collection_id="marks",
            )


class IdentityTests(unittest.TestCase):
    def test_role_comes_from_profile(self):
        db = MagicMock()
        db.get_document.return_value = {"$id": "admin-1", "role": "admin"}
        self.assertTrue(_make_service(db).get_identity("admin-1").is_admin)

    def test_missing_profile_is_a_student(self):
        db = MagicMock()
        db.get_document.side_effect = AppwriteException("Document not found", 404)
        identity = _make_service(db).get_identity("user-1")
        self.assertEqual(identity.role, "student")
        self.assertFalse(identity.is_admin)


class GradingSchemeServiceTests(unittest.TestCase):
    def test_schemes_are_listed_default_first(self):
        db = MagicMock()
        db.list_documents.return_value = _documents(
            {"$id": "s1", "scheme_name": "Relaxed", "grade_cutoffs": json.dumps({"A": 60, "F": 0}), "is_default": False},
            {"$id": "s2", "scheme_name": "Standard", "grade_cutoffs": {"A+": 85, "F": 0}, "is_default": True},
        )
        schemes = _make_service(db).list_grading_schemes()
        self.assertEqual([scheme.id for scheme in schemes], ["s2", "s1"])
        self.assertEqual(schemes[1].cutoffs, {"A": 60.0, "F": 0.0})

    def test_default_scheme_falls_back_to_builtin(self):
        db = MagicMock()
        db.list_documents.return_value = _documents()
        self.assertIs(_make_service(db).default_scheme(), DEFAULT_SCHEME)

    def test_students_cannot_create_schemes(self):
        db = MagicMock()
        with self.assertRaises(AuthorizationError):
            _make_service(db).create_grading_scheme(STUDENT, "Mine", {"A": 50, "F": 0})
        db.create_document.assert_not_called()

    def test_invalid_scheme_is_not_stored(self):
        db = MagicMock()
        with self.assertRaises(ConfigurationError):
            _make_service(db).create_grading_scheme(ADMIN, "Broken", {"A": 50})
        db.create_document.assert_not_called()

    def test_create_scheme(self):
        db = MagicMock()
        db.create_document.side_effect = _echo_create
        scheme = _make_service(db).create_grading_scheme(ADMIN, "Relaxed", {"A": 60, "F": 0})
        self.assertTrue(scheme.id.startswith("schemes-"))
        data = db.create_document.call_args.args[3]
        self.assertEqual(json.loads(data["grade_cutoffs"]), {"A": 60.0, "F": 0.0})
        self.assertFalse(data["is_default"])

    def test_new_default_scheme_clears_previous_default(self):
        db = MagicMock()
        db.list_documents.return_value = _documents({"$id": "old", "is_default": True})
        db.create_document.side_effect = _echo_create
        _make_service(db).create_grading_scheme(ADMIN, "Standard", {"A": 60, "F": 0}, is_default=True)
        db.update_document.assert_called_once_with("db", "schemes", "old", {"is_default": False})

    def test_update_default_scheme_keeps_itself(self):
        db = MagicMock()
        db.get_document.return_value = {
            "$id": "s2",
            "scheme_name": "Relaxed",
            "grade_cutoffs": json.dumps({"A": 60, "F": 0}),
            "is_default": False,
        }
        db.list_documents.return_value = _documents({"$id": "s1", "is_default": True}, {"$id": "s2", "is_default": True})

        scheme = _make_service(db).update_grading_scheme(ADMIN, "s2", is_default=True)

        self.assertTrue(scheme.is_default)
        updates = [call.args[2:] for call in db.update_document.call_args_list]
        self.assertIn(("s1", {"is_default": False}), updates)
        self.assertNotIn(("s2", {"is_default": False}), updates)
        stored = db.update_document.call_args_list[-1].args
        self.assertEqual(stored[2], "s2")
        self.assertTrue(stored[3]["is_default"])
        self.assertEqual(json.loads(stored[3]["grade_cutoffs"]), {"A": 60.0, "F": 0.0})

    def test_students_cannot_update_schemes(self):
        db = MagicMock()
        with self.assertRaises(AuthorizationError):
            _make_service(db).update_grading_scheme(STUDENT, "s1", name="Mine")
        db.update_document.assert_not_called()

    def test_delete_missing_scheme(self):
        db = MagicMock()
        db.get_document.side_effect = AppwriteException("Document not found", 404)
        with self.assertRaises(NotFoundError):
            _make_service(db).delete_grading_scheme(ADMIN, "missing")
        db.delete_document.assert_not_called()


class TemplateServiceTests(unittest.TestCase):
    def test_templates_are_sorted(self):
        db = MagicMock()
        db.list_documents.return_value = _documents(
            {"$id": "t2", "subject_name": "Physics", "default_credits": 4, "year": 1, "semester": 2, "branch": "CSE"},
            {"$id": "t1", "subject_name": "Maths", "default_credits": 4, "year": 1, "semester": 1, "branch": "CSE"},
        )
        templates = _make_service(db).list_templates()
        self.assertEqual([t.id for t in templates], ["t1", "t2"])

    def test_template_term_must_match_year(self):
        db = MagicMock()
        with self.assertRaises(ValidationError):
            _make_service(db).create_template(
                ADMIN, SubjectTemplate(subject_name="Maths", default_credits=4, year=2, term=1)
            )
        db.create_document.assert_not_called()


    def test_update_template(self):
        db = MagicMock()
        db.get_document.return_value = {
            "$id": "t1", "subject_name": "Maths", "default_credits": 4, "year": 1, "semester": 1, "branch": "CSE",
        }
        template = _make_service(db).update_template(ADMIN, "t1", default_credits=3, grading_scheme_id="s1")
        self.assertEqual(template.default_credits, 3)
        self.assertEqual(template.id, "t1")
        data = db.update_document.call_args.args[3]
        self.assertEqual(data["default_credits"], 3)
        self.assertEqual(data["semester"], 1)
        self.assertEqual(data["grading_scheme_id"], "s1")

    def test_update_template_rejects_wrong_term(self):
        db = MagicMock()
        db.get_document.return_value = {
            "$id": "t1", "subject_name": "Maths", "default_credits": 4, "year": 1, "semester": 1, "branch": "CSE",
        }
        with self.assertRaises(ValidationError):
            _make_service(db).update_template(ADMIN, "t1", term=5)
        db.update_document.assert_not_called()


class SemesterServiceTests(unittest.TestCase):
    def test_save_new_semester(self):
        db = MagicMock()
        db.list_documents.return_value = _documents()
        db.create_document.side_effect = _echo_create
        semester = Semester(
            title="",
            year=1,
            term=1,
            subjects=[
                Subject(name="Maths", credits=4, continuous=30, midterm=25, final=25, assumed=frozenset({"final"})),
                Subject(name="Physics", credits=3, continuous=20, midterm=20, final=20),
                Subject(name="Chemistry", credits=3, continuous=20, midterm=20, final=12),
                Subject(name="Seminar", credits=2, is_graded=False),
            ],
        )

        saved, summary = _make_service(db).save_semester("user-1", semester, DEFAULT_SCHEME)

        self.assertAlmostEqual(summary.sgpa, 6.9, places=6)
        semester_doc = db.create_document.call_args_list[0].args[3]
        self.assertEqual(semester_doc["semester_title"], "Year 1 - Semester 1")
        self.assertAlmostEqual(semester_doc["calculated_sgpa"], 6.9, places=6)
        self.assertEqual(semester_doc["total_credits"], 12)

        mark_docs = [call.args[3] for call in db.create_document.call_args_list[1:]]
        self.assertEqual([doc["position"] for doc in mark_docs], [0, 1, 2, 3])
        self.assertEqual(json.loads(mark_docs[0]["assumed_marks"]), {"cws": False, "mte": False, "ete": True})
        self.assertTrue(all(subject.id for subject in saved.subjects))
        self.assertEqual(saved.sgpa, summary.sgpa)

    def test_save_replaces_existing_marks(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "user_id": "user-1"}),
            _documents({"$id": "old-mark"}),
        ]
        db.update_document.return_value = {"$id": "sem-1", "semester_title": "Mine", "year": 1, "semester": 2}
        db.create_document.side_effect = _echo_create
        semester = Semester(title="Mine", year=1, term=2, subjects=[Subject(name="Maths", credits=4)], id="sem-1")

        _make_service(db).save_semester("user-1", semester, DEFAULT_SCHEME)

        db.delete_document.assert_called_once_with("db", "marks", "old-mark")
        self.assertEqual(db.create_document.call_count, 1)
        calls = [name for name, _, _ in db.mock_calls]
        self.assertLess(calls.index("create_document"), calls.index("delete_document"))
        self.assertLess(calls.index("delete_document"), calls.index("update_document"))

    def test_semester_of_another_user(self):
        db = MagicMock()
        db.list_documents.return_value = _documents()
        semester = Semester(title="Theirs", year=1, term=1, id="sem-9")
        with self.assertRaises(NotFoundError):
            _make_service(db).save_semester("user-1", semester, DEFAULT_SCHEME)
        db.update_document.assert_not_called()

    def test_invalid_term_writes_nothing(self):
        db = MagicMock()
        with self.assertRaises(ValidationError):
            _make_service(db).save_semester("user-1", Semester(title="", year=1, term=5), DEFAULT_SCHEME)
        db.create_document.assert_not_called()

    def test_empty_semester_is_seeded_from_templates(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "semester_title": "Y1", "year": 1, "semester": 1, "branch": "ECE"}),
            _documents(),
            _documents(
                {"$id": "t1", "subject_name": "Circuits", "default_credits": 4, "year": 1, "semester": 1, "branch": "ECE"},
            ),
        ]
        semester = _make_service(db).get_semester("user-1", "sem-1")
        self.assertEqual([(s.name, s.credits, s.final) for s in semester.subjects], [("Circuits", 4, None)])

    def test_stored_marks_are_loaded_in_position_order(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "semester_title": "Y1", "year": 1, "semester": 1}),
            _documents(
                {"$id": "m2", "position": 1, "subject_name": "Physics", "credits": 3, "cws_mark": 20,
                 "mte_mark": None, "ete_mark": None, "is_graded": None,
                 "overridden_grade": "A", "overridden_points": None},
                {"$id": "m1", "position": 0, "subject_name": "Maths", "credits": 4, "cws_mark": 25,
                 "mte_mark": 20, "ete_mark": 30, "assumed_marks": {"mte": True}, "is_graded": False},
            ),
        ]
        semester = _make_service(db).get_semester("user-1", "sem-1")
        maths, physics = semester.subjects
        self.assertEqual(maths.name, "Maths")
        self.assertEqual(maths.assumed, frozenset({"midterm"}))
        self.assertFalse(maths.is_graded)
        self.assertEqual(physics.override, override_for_grade("A"))
        self.assertTrue(physics.is_graded)

    def test_delete_semester_removes_marks(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "user_id": "user-1"}),
            _documents({"$id": "m1"}, {"$id": "m2"}),
        ]
        _make_service(db).delete_semester("user-1", "sem-1")
        deleted = [call.args[1:] for call in db.delete_document.call_args_list]
        self.assertEqual(deleted, [("marks", "m1"), ("marks", "m2"), ("semesters", "sem-1")])

    def test_failed_subject_write_keeps_previous_marks(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "user_id": "user-1"}),
            _documents({"$id": "old-mark"}),
        ]
        db.create_document.side_effect = [{"$id": "new-1"}, AppwriteException("Server error", 500)]
        semester = Semester(
            title="Mine",
            year=1,
            term=1,
            subjects=[Subject(name="Maths", credits=4), Subject(name="Physics", credits=4)],
            id="sem-1",
        )

        with self.assertLogs("gradetrack.services.appwrite_service", level="ERROR"):
            with self.assertRaises(AppwriteServiceError):
                _make_service(db).save_semester("user-1", semester, DEFAULT_SCHEME)

        db.delete_document.assert_called_once_with("db", "marks", "new-1")
        db.update_document.assert_not_called()

    def test_reset_to_template(self):
        semester_doc = {"$id": "sem-1", "user_id": "user-1", "semester_title": "Y1", "year": 1, "semester": 1, "branch": "CSE"}
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents(semester_doc),
            _documents(
                {"$id": "t1", "subject_name": "Maths", "default_credits": 4, "year": 1, "semester": 1, "branch": "CSE"},
            ),
            _documents(),
            _documents(semester_doc),
            _documents({"$id": "old-mark"}),
        ]
        db.create_document.side_effect = _echo_create
        db.update_document.return_value = semester_doc

        saved, summary = _make_service(db).reset_to_template("user-1", "sem-1")

        self.assertEqual([(s.name, s.credits, s.final) for s in saved.subjects], [("Maths", 4, None)])
        self.assertEqual(summary.total_credits, 4)
        self.assertEqual(summary.sgpa, 0)
        mark_doc = db.create_document.call_args.args[3]
        self.assertEqual(mark_doc["subject_name"], "Maths")
        self.assertIsNone(mark_doc["ete_mark"])
        db.delete_document.assert_called_once_with("db", "marks", "old-mark")

    def test_delete_subject_recomputes_semester(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "user_id": "user-1"}),
            _documents({"$id": "m2", "semester_id": "sem-1"}),
            _documents(
                {"$id": "m1", "position": 0, "subject_name": "Maths", "credits": 4,
                 "cws_mark": 30, "mte_mark": 25, "ete_mark": 25},
                {"$id": "m3", "position": 2, "subject_name": "Seminar", "credits": 2, "is_graded": False},
            ),
            _documents(),
        ]

        summary = _make_service(db).delete_subject("user-1", "sem-1", "m2")

        db.delete_document.assert_called_once_with("db", "marks", "m2")
        self.assertEqual(summary.sgpa, 9)
        self.assertEqual(summary.total_credits, 6)
        db.update_document.assert_called_once_with(
            "db", "semesters", "sem-1", {"calculated_sgpa": 9.0, "total_credits": 6}
        )

    def test_delete_unknown_subject(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "user_id": "user-1"}),
            _documents(),
        ]
        with self.assertRaises(NotFoundError):
            _make_service(db).delete_subject("user-1", "sem-1", "missing")
        db.delete_document.assert_not_called()
        db.update_document.assert_not_called()

    def test_predict_uses_stored_marks(self):
        db = MagicMock()
        db.list_documents.side_effect = [
            _documents({"$id": "sem-1", "user_id": "user-1", "year": 1, "semester": 1}),
            _documents(
                {"$id": "m1", "position": 0, "subject_name": "Maths", "credits": 4,
                 "cws_mark": 30, "mte_mark": 25, "ete_mark": 25},
                {"$id": "m2", "position": 1, "subject_name": "Physics", "credits": 4,
                 "cws_mark": 20, "mte_mark": 20, "ete_mark": None},
            ),
            _documents(),
        ]

        result = _make_service(db).predict("user-1", "sem-1", 8)

        self.assertEqual(result.secured_credits, 4)
        self.assertAlmostEqual(result.secured_points, 36)
        self.assertAlmostEqual(result.required_average_points, 7)
        self.assertEqual(result.required_mark, 60)
        self.assertEqual([(t.subject_name, t.required_final) for t in result.targets], [("Physics", 20)])

    def test_record_summary_skips_unsaved_semesters(self):
        db = MagicMock()
        db.list_documents.return_value = _documents(
            {"$id": "s3", "calculated_sgpa": None, "total_credits": None},
            {"$id": "s2", "calculated_sgpa": 7.0, "total_credits": 18},
            {"$id": "s1", "calculated_sgpa": 8.0, "total_credits": 20},
        )
        summary = _make_service(db).record_summary("user-1")
        self.assertEqual(summary.cgpa_display, 7.53)
        self.assertEqual(summary.latest_sgpa, 7.0)
        self.assertEqual(summary.total_credits, 38)

    def test_appwrite_errors_are_wrapped(self):
        db = MagicMock()
        db.list_documents.side_effect = AppwriteException("Server error", 500)
        with self.assertRaises(AppwriteServiceError):
            _make_service(db).list_semesters("user-1")


if __name__ == "__main__":
    unittest.main()
