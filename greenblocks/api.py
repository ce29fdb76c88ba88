"""Flask surface over the engines.

API base: http://127.0.0.1:5000/api/v1
The acting user is identified by the ``X-User-Id`` header.
"""
import json
import logging

from flask import Blueprint, Flask, Response, current_app, request

from .errors import GreenBlocksError, InvalidArgument, Unauthorized
from .authz import require_role
from .models import UserRole
from .services import build_services
from .utils import to_public

logger = logging.getLogger(__name__)

bp_core = Blueprint("core", __name__, url_prefix="/api/v1")
bp_projects = Blueprint("projects", __name__, url_prefix="/api/v1/projects")
bp_claims = Blueprint("claims", __name__, url_prefix="/api/v1/claims")
bp_market = Blueprint("market", __name__, url_prefix="/api/v1/market")
bp_buyer = Blueprint("buyer", __name__, url_prefix="/api/v1/buyer")


# --------------- JSON helpers ---------------
def j(data, status=200):
    return Response(json.dumps(data, default=str), status=status, mimetype="application/json")


def j_ok(payload=None, code=200):
    return j({"success": True, **to_public(payload or {})}, code)


def j_err(err: GreenBlocksError):
    return j(err.to_dict(), err.http_status)


def svc():
    return current_app.extensions["greenblocks"]


def body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def actor() -> dict:
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise Unauthorized("X-User-Id header is required")
    user = svc().users.get(user_id)
    if not user or not user.get("isActive", True):
        raise Unauthorized("Unknown user")
    return user


def paging():
    return request.args.get("page", 1, type=int), request.args.get("limit", 10, type=int)


# ---- Health / users ----
@bp_core.get("/health")
def health():
    return j_ok({"ok": True, "ledger": svc().ledger is not None})


@bp_core.post("/users")
def register_user():
    data = body()
    user = svc().users.register(data.get("name"), data.get("email"), data.get("role"),
                                data.get("walletAddress"), data.get("organization"))
    return j_ok({"user": user}, 201)


@bp_core.get("/users/me")
def me():
    return j_ok({"user": actor()})


@bp_core.get("/users/<user_id>")
def get_user(user_id):
    actor()
    user = svc().users.require(user_id)
    return j_ok({"user": {k: user.get(k) for k in ("userId", "name", "role", "organization", "walletAddress")}})


# ---- Projects ----
@bp_projects.post("")
def create_project():
    return j_ok({"project": svc().projects.create_project(actor(), body())}, 201)


@bp_projects.get("")
def list_projects():
    page, limit = paging()
    out = svc().projects.list_projects(status=request.args.get("status"), type=request.args.get("type"),
                                       search=request.args.get("search"), page=page, limit=limit)
    return j_ok(out)


@bp_projects.get("/mine")
def my_projects():
    return j_ok({"projects": svc().projects.my_projects(actor())})


@bp_projects.get("/verifications/pending")
def pending_verifications():
    return j_ok({"projects": svc().projects.pending_verifications(actor())})


@bp_projects.get("/verifications/completed")
def completed_verifications():
    return j_ok({"projects": svc().projects.completed_verifications(actor())})


@bp_projects.get("/<project_id>")
def get_project(project_id):
    return j_ok({"project": svc().projects.get_project(project_id)})


@bp_projects.put("/<project_id>")
def update_project(project_id):
    return j_ok({"project": svc().projects.update_project(actor(), project_id, body())})


@bp_projects.delete("/<project_id>")
def delete_project(project_id):
    svc().projects.delete_project(actor(), project_id)
    return j_ok({"message": "Project deleted"})


@bp_projects.post("/<project_id>/submit")
def submit_project(project_id):
    return j_ok({"project": svc().projects.submit_project(actor(), project_id)})


@bp_projects.post("/<project_id>/review")
def review_project(project_id):
    return j_ok({"project": svc().projects.review_project(actor(), project_id, body().get("comments"))})


@bp_projects.post("/<project_id>/approve")
def approve_project(project_id):
    return j_ok({"project": svc().projects.approve_project(actor(), project_id, body().get("comments"))})


@bp_projects.post("/<project_id>/reject")
def reject_project(project_id):
    return j_ok({"project": svc().projects.reject_project(actor(), project_id, body().get("reason"))})


@bp_projects.post("/<project_id>/documents")
def upload_documents(project_id):
    files = [(f.filename, f.read(), f.mimetype) for f in request.files.getlist("documents")]
    return j_ok({"documents": svc().projects.upload_documents(actor(), project_id, files)}, 201)


@bp_projects.post("/<project_id>/mrv")
def submit_mrv(project_id):
    files = [(f.filename, f.read()) for f in request.files.getlist("files")]
    record = svc().mrv.submit_mrv(actor(), project_id, request.form.get("description", ""), files,
                                  report_name=request.form.get("reportName"))
    return j_ok({"mrvData": record}, 201)


@bp_projects.get("/<project_id>/mrv")
def list_mrv(project_id):
    actor()
    return j_ok({"mrvData": svc().mrv.list_mrv(project_id)})


# ---- Claims ----
@bp_claims.post("")
def create_claim():
    data = body()
    claim = svc().claims.create_claim(actor(), data.get("projectId"), data.get("creditsRequested"),
                                      data.get("reportingPeriod"), data.get("mrvDataRefs"))
    return j_ok({"claim": claim}, 201)


@bp_claims.get("")
def list_claims():
    page, limit = paging()
    return j_ok(svc().claims.list_claims(actor(), status=request.args.get("status"), page=page, limit=limit))


@bp_claims.get("/mine")
def my_claims():
    return j_ok({"claims": svc().claims.my_claims(actor())})


@bp_claims.get("/<claim_id>")
def get_claim(claim_id):
    return j_ok({"claim": svc().claims.get_claim(actor(), claim_id)})


@bp_claims.post("/<claim_id>/review")
def begin_review(claim_id):
    return j_ok({"claim": svc().claims.begin_review(actor(), claim_id)})


@bp_claims.post("/<claim_id>/inspection/schedule")
def schedule_inspection(claim_id):
    return j_ok({"claim": svc().claims.schedule_inspection(actor(), claim_id, body().get("inspectionDate"))})


@bp_claims.post("/<claim_id>/inspection/complete")
def complete_inspection(claim_id):
    data = body()
    claim = svc().claims.complete_inspection(actor(), claim_id, data.get("findings"), data.get("inspectionResult"))
    return j_ok({"claim": claim})


@bp_claims.post("/<claim_id>/issue")
def issue_credits(claim_id):
    data = body()
    claim = svc().claims.issue_credits(actor(), claim_id, data.get("approvedCredits"), data.get("comments"))
    return j_ok({"claim": claim})


@bp_claims.post("/<claim_id>/reject")
def reject_claim(claim_id):
    return j_ok({"claim": svc().claims.reject_claim(actor(), claim_id, body().get("reason"))})


# ---- Marketplace ----
@bp_market.post("/listings")
def list_credits():
    data = body()
    listing = svc().market.list_credits(actor(), data.get("claimId"), data.get("creditsToSell"),
                                        data.get("pricePerCredit"))
    return j_ok({"listing": listing}, 201)


@bp_market.get("/listings")
def browse_listings():
    page, limit = paging()
    return j_ok(svc().market.browse_listings(status=request.args.get("status", "active"), page=page, limit=limit))


@bp_market.get("/listings/mine")
def my_listings():
    user = actor()
    require_role(user, UserRole.PROJECT_DEVELOPER, action="view listings")
    return j_ok({"listings": svc().market.my_listings(user)})


@bp_market.get("/listings/<listing_id>")
def get_listing(listing_id):
    return j_ok({"listing": svc().market.get_listing(listing_id)})


@bp_market.post("/listings/<listing_id>/buy")
def buy_credits(listing_id):
    data = body()
    out = svc().market.buy_credits(actor(), listing_id, data.get("creditsToBuy"), data.get("paymentTxHash"))
    return j_ok(out)


@bp_market.post("/listings/<listing_id>/cancel")
def cancel_listing(listing_id):
    return j_ok({"listing": svc().market.cancel_listing(actor(), listing_id)})


@bp_market.put("/listings/<listing_id>/price")
def update_listing_price(listing_id):
    data = body()
    if "pricePerCredit" not in data:
        raise InvalidArgument("pricePerCredit is required")
    return j_ok({"listing": svc().market.update_listing_price(actor(), listing_id, data["pricePerCredit"])})


@bp_market.post("/listings/<listing_id>/reconcile")
def reconcile_listing(listing_id):
    return j_ok(svc().market.recover_listing(actor(), listing_id))


# ---- Buyer ----
def buyer() -> dict:
    user = actor()
    require_role(user, UserRole.CREDIT_BUYER, action="view buyer holdings")
    return user


@bp_buyer.get("/holdings")
def holdings():
    return j_ok({"holdings": svc().ownership.holdings(buyer()["userId"])})


@bp_buyer.get("/stats")
def stats():
    return j_ok({"stats": svc().ownership.stats(buyer())})


@bp_buyer.get("/transactions")
def transactions():
    user = buyer()
    page, limit = paging()
    return j_ok(svc().ownership.transactions(user["userId"], page=page, limit=limit))


@bp_buyer.get("/holdings-by-project")
def holdings_by_project():
    return j_ok({"projects": svc().ownership.holdings_by_project(buyer()["userId"])})


def create_app(services=None) -> Flask:
    app = Flask(__name__)
    app.extensions["greenblocks"] = services or build_services()
    for bp in (bp_core, bp_projects, bp_claims, bp_market, bp_buyer):
        app.register_blueprint(bp)

    @app.errorhandler(GreenBlocksError)
    def on_error(err):
        if err.http_status >= 500:
            logger.warning("%s %s failed: %s", request.method, request.path, err.message)
        return j_err(err)

    return app
