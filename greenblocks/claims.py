"""Credit claims: filing, inspection and token issuance.

Issuance order is transfer first, local commit second. The claim carries an
``issuanceLock`` while the transfer is in flight so two regulators cannot both
send tokens for the same claim. A transfer that does not return drops the lock
and leaves the claim in ``inspection_completed``. A lock older than
``lock_ttl`` seconds belongs to a worker that died mid-transfer and may be
taken over.
"""
import logging
import math
from datetime import timedelta
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

from . import authz
from .errors import ConcurrentModification, ExternalFailure, Forbidden, InvalidArgument, InvalidState, NotFound
from .ledger import REGULATOR
from .models import (CLAIM_NON_TERMINAL, CLAIM_TRANSITIONS, COMPLETED_RESULTS, ISSUABLE_RESULTS, ClaimStatus,
                     InspectionResult, ProjectStatus, values)
from .notifier import notify
from .store import guarded_transition
from .utils import as_utc, human_id, norm_address, parse_iso, require_positive_int, require_text, utcnow

logger = logging.getLogger(__name__)


def _reporting_period(period) -> dict:
    if not isinstance(period, dict):
        raise InvalidArgument("reportingPeriod with startDate and endDate is required")
    start, end = parse_iso(period.get("startDate")), parse_iso(period.get("endDate"))
    if end <= start:
        raise InvalidArgument("reportingPeriod.endDate must be after startDate")
    return {"startDate": start, "endDate": end}


class ClaimEngine:
    def __init__(self, db, projects, users, ledger, notifier=None,
                 regulator_signer: str = REGULATOR, cas_retries: int = 5, lock_ttl: float = 600.0):
        self.db = db
        self.projects = projects
        self.users = users
        self.ledger = ledger
        self.notifier = notifier
        self.regulator_signer = regulator_signer
        self.cas_retries = cas_retries
        self.lock_ttl = lock_ttl

    # ---- queries ----
    def _get(self, claim_id: str) -> dict:
        claim = self.db.claims.find_one({"claimId": claim_id})
        if not claim:
            raise NotFound("Claim not found")
        return claim

    def get_claim(self, actor: dict, claim_id: str) -> dict:
        claim = self._get(claim_id)
        authz.require_owner_or_regulator(actor, claim, action="view this claim")
        return claim

    def list_claims(self, actor: dict, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
        authz.require_regulator(actor, "view all claims")
        q = {"status": status} if status else {}
        page, limit = max(1, int(page)), max(1, int(limit))
        total = self.db.claims.count_documents(q)
        claims = list(self.db.claims.find(q).sort("createdAt", DESCENDING)
                      .skip((page - 1) * limit).limit(limit))
        return {"claims": claims, "total": total,
                "totalPages": math.ceil(total / limit), "currentPage": page}

    def my_claims(self, actor: dict) -> list:
        return list(self.db.claims.find({"developer": actor["userId"]}).sort("createdAt", DESCENDING))

    # ---- developer ----
    def create_claim(self, actor: dict, project_id: str, credits_requested, reporting_period,
                     mrv_refs=None) -> dict:
        project = self.projects.get_project(project_id)
        authz.require_owner(actor, project, action="create claims for this project")
        if project["status"] != ProjectStatus.APPROVED.value:
            raise InvalidState("Project must be approved before claiming credits", status=project["status"])
        if not project.get("mrvData"):
            raise InvalidState("MRV data must be submitted before claiming credits")
        live = self.db.claims.find_one({"project": project_id, "status": {"$in": values(CLAIM_NON_TERMINAL)}})
        if live:
            raise InvalidState("A claim is already pending for this project", claimId=live["claimId"])
        expected = project["projectDetails"]["expectedCredits"]
        credits = require_positive_int(credits_requested, "creditsRequested",
                                       upper=expected, upper_label="project expected credits")
        period = _reporting_period(reporting_period)

        claim_id = human_id(self.db, "CLM")
        if not self.projects.acquire_claim_slot(project_id, claim_id):
            current = self.projects.get_project(project_id)
            if current["status"] != ProjectStatus.APPROVED.value:
                raise InvalidState("Project must be approved before claiming credits", status=current["status"])
            raise InvalidState("A claim is already pending for this project", claimId=current.get("activeClaim"))

        now = utcnow()
        doc = {
            "claimId": claim_id,
            "project": project_id,
            "developer": actor["userId"],
            "claimDetails": {
                "creditsRequested": credits,
                "reportingPeriod": period,
                "mrvDataRefs": list(mrv_refs or []),
            },
            "status": ClaimStatus.PENDING.value,
            "inspection": {"inspectionResult": InspectionResult.NOT_STARTED.value},
            "review": {},
            "creditIssuance": {"creditsIssued": False},
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            self.db.claims.insert_one(doc)
        except Exception:
            self.projects.release_claim_slot(project_id, claim_id)
            raise
        logger.info("claim %s filed for %s (%d credits)", claim_id, project_id, credits)
        return doc

    # ---- regulator ----
    def begin_review(self, actor: dict, claim_id: str) -> dict:
        authz.require_regulator(actor, "review claims")
        return guarded_transition(self.db.claims, "claimId", claim_id, CLAIM_TRANSITIONS,
                                  ClaimStatus.UNDER_REVIEW, "Claim",
                                  set_fields={"review.reviewedBy": actor["userId"]},
                                  retries=self.cas_retries)

    def schedule_inspection(self, actor: dict, claim_id: str, inspection_date) -> dict:
        authz.require_regulator(actor, "schedule inspections")
        when = parse_iso(inspection_date)
        if when <= utcnow():
            raise InvalidArgument("Inspection date must be in the future")
        claim = guarded_transition(
            self.db.claims, "claimId", claim_id, CLAIM_TRANSITIONS, ClaimStatus.INSPECTION_SCHEDULED, "Claim",
            set_fields={"inspection.scheduledDate": when,
                        "inspection.inspector": actor["userId"],
                        "inspection.inspectionResult": InspectionResult.NOT_STARTED.value},
            retries=self.cas_retries,
        )
        self._notify_developer(claim, "inspection_scheduled", claimId=claim_id,
                               scheduledDate=when.isoformat())
        return claim

    def complete_inspection(self, actor: dict, claim_id: str, findings: Optional[str], inspection_result: str) -> dict:
        authz.require_regulator(actor, "complete inspections")
        try:
            result = InspectionResult(inspection_result)
        except ValueError:
            result = None
        if result not in COMPLETED_RESULTS:
            raise InvalidArgument("inspectionResult must be one of passed, failed, partial")

        def only_assigned_inspector(doc):
            if (doc["status"] == ClaimStatus.INSPECTION_SCHEDULED.value
                    and doc.get("inspection", {}).get("inspector") != actor["userId"]):
                raise Forbidden("Only the assigned inspector can complete this inspection")

        return guarded_transition(
            self.db.claims, "claimId", claim_id, CLAIM_TRANSITIONS, ClaimStatus.INSPECTION_COMPLETED, "Claim",
            set_fields={"inspection.completedDate": utcnow(),
                        "inspection.findings": findings,
                        "inspection.inspectionResult": result.value},
            check=only_assigned_inspector,
            extra_filter={"inspection.inspector": actor["userId"]},
            retries=self.cas_retries,
        )

    def issue_credits(self, actor: dict, claim_id: str, approved_credits, comments: Optional[str] = None) -> dict:
        authz.require_regulator(actor, "issue credits")
        claim = self._get(claim_id)
        if claim["status"] != ClaimStatus.INSPECTION_COMPLETED.value:
            raise InvalidState("Claim must have a completed inspection before issuance", status=claim["status"])
        if claim["inspection"].get("inspectionResult") not in values(ISSUABLE_RESULTS):
            raise InvalidArgument("Cannot issue credits for a failed inspection")
        requested = claim["claimDetails"]["creditsRequested"]
        credits = require_positive_int(approved_credits, "approvedCredits",
                                       upper=requested, upper_label="requested credits")
        developer = self.users.get(claim["developer"])
        wallet = norm_address(developer and developer.get("walletAddress"))
        if wallet is None:
            raise ExternalFailure("Developer wallet address missing or invalid")

        token = self._lock_for_issuance(claim_id)
        transferred = False
        try:
            receipt = self.ledger.transfer(self.regulator_signer, wallet, credits)
            transferred = True
        finally:
            if not transferred:
                self.db.claims.update_one({"claimId": claim_id, "issuanceLock": token},
                                          {"$unset": {"issuanceLock": "", "issuanceLockedAt": ""}})
                logger.warning("issuance for %s failed; claim left in inspection_completed", claim_id)

        now = utcnow()
        claim = self.db.claims.find_one_and_update(
            {"claimId": claim_id, "issuanceLock": token},
            {"$set": {
                "status": ClaimStatus.APPROVED.value,
                "creditIssuance": {
                    "approvedCredits": credits,
                    "issuedAt": now,
                    "creditsIssued": True,
                    "txHash": receipt.tx_hash,
                    "blockNumber": receipt.block_number,
                },
                "review.reviewedAt": now,
                "review.reviewedBy": actor["userId"],
                "review.comments": comments,
                "updatedAt": now,
            }, "$unset": {"issuanceLock": "", "issuanceLockedAt": ""}},
            return_document=ReturnDocument.AFTER,
        )
        if claim is None:
            logger.error("claim %s lost its issuance lock after transfer %s", claim_id, receipt.tx_hash)
            raise ConcurrentModification("Claim changed during issuance", txHash=receipt.tx_hash)
        logger.info("issued %d credits for %s: %s", credits, claim_id, receipt.tx_hash)

        try:
            self.projects.mark_completed(claim["project"])
        except InvalidState as e:
            logger.warning("project %s not marked completed: %s", claim["project"], e)
        self.projects.release_claim_slot(claim["project"], claim_id)
        self._notify_developer(claim, "credits_issued", claimId=claim_id,
                               approvedCredits=credits, txHash=receipt.tx_hash)
        return claim

    def reject_claim(self, actor: dict, claim_id: str, reason: str) -> dict:
        authz.require_regulator(actor, "reject claims")
        reason = require_text(reason, "Rejection reason")

        # refilled by the check on every read so the write sees the same lock
        observed = {}

        def not_issuing(doc):
            if doc.get("issuanceLock") and not self._lock_expired(doc):
                raise InvalidState("Credits for this claim are being issued")
            observed["issuanceLock"] = doc.get("issuanceLock")

        claim = guarded_transition(
            self.db.claims, "claimId", claim_id, CLAIM_TRANSITIONS, ClaimStatus.REJECTED, "Claim",
            set_fields={"review.reviewedAt": utcnow(),
                        "review.reviewedBy": actor["userId"],
                        "review.comments": reason,
                        "issuanceLock": None,
                        "issuanceLockedAt": None},
            check=not_issuing,
            extra_filter=observed,
            retries=self.cas_retries,
        )
        self.projects.release_claim_slot(claim["project"], claim_id)
        self._notify_developer(claim, "claim_rejected", claimId=claim_id, reason=reason)
        return claim

    def _lock_expired(self, claim: dict) -> bool:
        locked_at = claim.get("issuanceLockedAt")
        if locked_at is None:
            return True
        return utcnow() - as_utc(locked_at) > timedelta(seconds=self.lock_ttl)

    def _lock_for_issuance(self, claim_id: str) -> str:
        token = str(ObjectId())
        for _ in range(max(1, self.cas_retries)):
            current = self._get(claim_id)
            if current["status"] != ClaimStatus.INSPECTION_COMPLETED.value:
                raise InvalidState("Claim must have a completed inspection before issuance",
                                   status=current["status"])
            held = current.get("issuanceLock")
            if held:
                if not self._lock_expired(current):
                    raise InvalidState("Credits for this claim are already being issued")
                logger.warning("claim %s: taking over issuance lock %s held since %s",
                               claim_id, held, current.get("issuanceLockedAt"))
            locked = self.db.claims.update_one(
                {"claimId": claim_id, "status": ClaimStatus.INSPECTION_COMPLETED.value, "issuanceLock": held},
                {"$set": {"issuanceLock": token, "issuanceLockedAt": utcnow()}},
            )
            if locked.modified_count == 1:
                return token
        raise ConcurrentModification("Claim changed concurrently; retry the issuance")

    def _notify_developer(self, claim: dict, event: str, **fields) -> None:
        dev = self.users.get(claim["developer"])
        notify(self.notifier, dev and dev.get("email"), event, **fields)
