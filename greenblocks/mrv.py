import logging
import time
from typing import Iterable, Optional, Tuple

from bson import ObjectId

from . import authz
from .errors import InvalidArgument, InvalidState, NotFound
from .models import ProjectStatus
from .utils import utcnow

logger = logging.getLogger(__name__)


class MRVStore:
    """Append-only MRV evidence attached to a project (``project.mrvData``)."""

    def __init__(self, db, filestore):
        self.db = db
        self.filestore = filestore

    def submit_mrv(self, actor: dict, project_id: str, description: str,
                   files: Iterable[Tuple[str, bytes]], report_name: Optional[str] = None) -> dict:
        project = self.db.projects.find_one({"projectId": project_id})
        if not project:
            raise NotFound("Project not found")
        authz.require_owner(actor, project, action="submit MRV data for this project")
        if project["status"] == ProjectStatus.REJECTED.value:
            raise InvalidState("Cannot attach MRV data to a rejected project")
        files = [(name, data) for name, data in (files or []) if data]
        if not files:
            raise InvalidArgument("No files uploaded")

        # 1) evidence files, 2) metadata document pointing at them
        file_cids = [self.filestore.put(data, name) for name, data in files]
        now = utcnow()
        metadata = {
            "projectId": project_id,
            "projectName": project.get("name"),
            "description": description or "",
            "files": file_cids,
            "uploadedBy": actor["walletAddress"],
            "uploadedAt": now.isoformat(),
        }
        metadata_cid = self.filestore.put_json(metadata, f"{project_id}-mrv.json")

        record = {
            "mrvId": str(ObjectId()),
            "reportName": report_name or f"MRV-{int(time.time() * 1000)}",
            "description": description or "",
            "ipfsHash": metadata_cid,
            "files": file_cids,
            "uploadedBy": actor["walletAddress"],
            "uploadedAt": now,
        }
        res = self.db.projects.update_one({"projectId": project_id}, {"$push": {"mrvData": record}})
        if res.matched_count != 1:
            raise NotFound("Project not found")
        logger.info("MRV %s attached to %s (%d files)", record["mrvId"], project_id, len(file_cids))
        return record

    def list_mrv(self, project_id: str) -> list:
        project = self.db.projects.find_one({"projectId": project_id}, {"mrvData": 1})
        if not project:
            raise NotFound("Project not found")
        return project.get("mrvData") or []

    def has_mrv(self, project_id: str) -> bool:
        return bool(self.list_mrv(project_id))
