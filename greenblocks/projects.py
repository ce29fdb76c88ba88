import logging
import math
import re
from typing import Iterable, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument

from . import authz
from .errors import ExternalFailure, InvalidArgument, InvalidState, NotFound
from .models import (PROJECT_DELETABLE, PROJECT_EDITABLE, PROJECT_TRANSITIONS, ProjectStatus,
                     ProjectType, UserRole, values)
from .notifier import notify
from .store import guarded_transition
from .utils import human_id, parse_iso, require_positive_int, require_text, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description", "type", "location", "projectDetails")


def _validate_location(loc) -> dict:
    if not isinstance(loc, dict):
        raise InvalidArgument("location is required")
    out = {k: require_text(loc.get(k), f"location.{k}") for k in ("country", "state", "address")}
    coords = loc.get("coordinates")
    if coords:
        try:
            out["coordinates"] = {"latitude": float(coords["latitude"]), "longitude": float(coords["longitude"])}
        except (KeyError, TypeError, ValueError):
            raise InvalidArgument("location.coordinates needs numeric latitude and longitude")
    return out


def _validate_details(d) -> dict:
    if not isinstance(d, dict):
        raise InvalidArgument("projectDetails is required")
    start, end = parse_iso(d.get("startDate")), parse_iso(d.get("endDate"))
    if end <= start:
        raise InvalidArgument("projectDetails.endDate must be after startDate")
    return {
        "startDate": start,
        "endDate": end,
        "expectedCredits": require_positive_int(d.get("expectedCredits"), "projectDetails.expectedCredits"),
        "methodology": require_text(d.get("methodology"), "projectDetails.methodology"),
        "baseline": require_text(d.get("baseline"), "projectDetails.baseline"),
    }


def _validate_type(t) -> str:
    try:
        return ProjectType(t).value
    except ValueError:
        raise InvalidArgument(f"unknown project type: {t!r}")


def _validate_fields(data: dict, partial: bool = False) -> dict:
    validators = {
        "name": lambda v: require_text(v, "name"),
        "description": lambda v: require_text(v, "description"),
        "type": _validate_type,
        "location": _validate_location,
        "projectDetails": _validate_details,
    }
    out = {}
    for field, fn in validators.items():
        if partial and field not in data:
            continue
        out[field] = fn(data.get(field))
    return out


class ProjectRegistry:
    """Projects and their verification status."""

    def __init__(self, db, notifier=None, cas_retries: int = 5, filestore=None):
        self.db = db
        self.notifier = notifier
        self.filestore = filestore
        self.cas_retries = cas_retries

    # ---- queries ----
    def get_project(self, project_id: str) -> dict:
        project = self.db.projects.find_one({"projectId": project_id})
        if not project:
            raise NotFound("Project not found")
        return project

    def list_projects(self, status: Optional[str] = None, type: Optional[str] = None,
                      search: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        q = {}
        if status:
            q["status"] = status
        if type:
            q["type"] = type
        if search:
            rx = {"$regex": re.escape(search), "$options": "i"}
            q["$or"] = [{"name": rx}, {"description": rx}]
        page, limit = max(1, int(page)), max(1, int(limit))
        total = self.db.projects.count_documents(q)
        projects = list(self.db.projects.find(q).sort("createdAt", DESCENDING)
                        .skip((page - 1) * limit).limit(limit))
        return {"projects": projects, "total": total,
                "totalPages": math.ceil(total / limit), "currentPage": page}

    def my_projects(self, actor: dict) -> list:
        return list(self.db.projects.find({"developer": actor["userId"]}).sort("createdAt", DESCENDING))

    def pending_verifications(self, actor: dict) -> list:
        authz.require_regulator(actor, "view verifications")
        q = {"status": {"$in": values({ProjectStatus.SUBMITTED, ProjectStatus.UNDER_REVIEW})}}
        return list(self.db.projects.find(q).sort("verification.submittedAt", DESCENDING))

    def completed_verifications(self, actor: dict) -> list:
        authz.require_regulator(actor, "view verifications")
        q = {"status": {"$in": values({ProjectStatus.APPROVED, ProjectStatus.REJECTED})}}
        return list(self.db.projects.find(q).sort("verification.reviewedAt", DESCENDING))

    # ---- developer actions ----
    def create_project(self, actor: dict, data: dict) -> dict:
        authz.require_role(actor, UserRole.PROJECT_DEVELOPER, action="register projects")
        fields = _validate_fields(data or {})
        now = utcnow()
        doc = {
            "projectId": human_id(self.db, "PRJ"),
            **fields,
            "developer": actor["userId"],
            "status": ProjectStatus.DRAFT.value,
            "verification": {},
            "documentation": [],
            "mrvData": [],
            "activeClaim": None,
            "createdAt": now,
            "updatedAt": now,
        }
        self.db.projects.insert_one(doc)
        logger.info("project %s registered by %s", doc["projectId"], actor["userId"])
        return doc

    def update_project(self, actor: dict, project_id: str, changes: dict) -> dict:
        project = self.get_project(project_id)
        authz.require_owner(actor, project, action="update this project")
        unknown = set(changes or {}) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidArgument(f"fields cannot be updated: {', '.join(sorted(unknown))}")
        fields = _validate_fields(changes or {}, partial=True)
        if not fields:
            raise InvalidArgument("nothing to update")
        fields["updatedAt"] = utcnow()
        res = self.db.projects.find_one_and_update(
            {"projectId": project_id, "status": {"$in": values(PROJECT_EDITABLE)}},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if res is None:
            raise InvalidState("Cannot update project in current status", status=self.get_project(project_id)["status"])
        return res

    def delete_project(self, actor: dict, project_id: str) -> None:
        project = self.get_project(project_id)
        authz.require_owner(actor, project, action="delete this project")
        res = self.db.projects.delete_one({"projectId": project_id, "status": {"$in": values(PROJECT_DELETABLE)}})
        if res.deleted_count != 1:
            raise InvalidState("Cannot delete approved or active project", status=self.get_project(project_id)["status"])
        logger.info("project %s deleted", project_id)

    def submit_project(self, actor: dict, project_id: str) -> dict:
        return guarded_transition(
            self.db.projects, "projectId", project_id, PROJECT_TRANSITIONS, ProjectStatus.SUBMITTED, "Project",
            set_fields={"verification.submittedAt": utcnow()},
            check=lambda p: authz.require_owner(actor, p, action="submit this project"),
            retries=self.cas_retries,
        )

    def upload_documents(self, actor: dict, project_id: str,
                         files: Iterable[Tuple[str, bytes, Optional[str]]]) -> list:
        project = self.get_project(project_id)
        authz.require_owner(actor, project, action="upload documents for this project")
        files = [f for f in (files or []) if f[1]]
        if not files:
            raise InvalidArgument("No files uploaded")
        if self.filestore is None:
            raise ExternalFailure("File storage is not configured")

        docs = [{"fileName": name,
                 "fileHash": self.filestore.put(data, name),
                 "fileType": file_type or "application/octet-stream",
                 "uploadDate": utcnow()}
                for name, data, file_type in files]
        res = self.db.projects.update_one({"projectId": project_id},
                                          {"$push": {"documentation": {"$each": docs}},
                                           "$set": {"updatedAt": utcnow()}})
        if res.matched_count != 1:
            raise NotFound("Project not found")
        logger.info("%d documents attached to %s", len(docs), project_id)
        return docs

    # ---- regulator actions ----
    def _review(self, actor: dict, project_id: str, target: ProjectStatus, comments: Optional[str]) -> dict:
        authz.require_regulator(actor, "review projects")
        return guarded_transition(
            self.db.projects, "projectId", project_id, PROJECT_TRANSITIONS, target, "Project",
            set_fields={"verification.reviewedBy": actor["userId"],
                        "verification.reviewedAt": utcnow(),
                        "verification.comments": comments},
            retries=self.cas_retries,
        )

    def review_project(self, actor: dict, project_id: str, comments: Optional[str] = None) -> dict:
        return self._review(actor, project_id, ProjectStatus.UNDER_REVIEW, comments)

    def approve_project(self, actor: dict, project_id: str, comments: Optional[str] = None) -> dict:
        project = self._review(actor, project_id, ProjectStatus.APPROVED, comments)
        self._notify_developer(project, "project_approved", name=project["name"])
        return project

    def reject_project(self, actor: dict, project_id: str, reason: str) -> dict:
        reason = require_text(reason, "Rejection reason")
        project = self._review(actor, project_id, ProjectStatus.REJECTED, reason)
        self._notify_developer(project, "project_rejected", name=project["name"], reason=reason)
        return project

    # ---- used by the claim engine ----
    def mark_completed(self, project_id: str) -> dict:
        return guarded_transition(self.db.projects, "projectId", project_id, PROJECT_TRANSITIONS,
                                  ProjectStatus.COMPLETED, "Project", retries=self.cas_retries)

    def acquire_claim_slot(self, project_id: str, claim_id: str) -> bool:
        res = self.db.projects.update_one(
            {"projectId": project_id, "status": ProjectStatus.APPROVED.value, "activeClaim": None},
            {"$set": {"activeClaim": claim_id}},
        )
        return res.modified_count == 1

    def release_claim_slot(self, project_id: str, claim_id: str) -> None:
        self.db.projects.update_one({"projectId": project_id, "activeClaim": claim_id},
                                    {"$set": {"activeClaim": None}})

    def _notify_developer(self, project: dict, event: str, **fields) -> None:
        dev = self.db.users.find_one({"userId": project["developer"]})
        notify(self.notifier, dev and dev.get("email"), event, **fields)
