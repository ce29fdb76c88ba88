"""Buyer-side credit holdings.

One active row per (buyer, listing) accumulates every purchase the buyer made
from that listing. The listing's ``sales`` journal is the source of truth;
``reconcile_listing`` rebuilds the rows from it when an ownership write was
lost after the sale committed.
"""
import logging
import math
from collections import OrderedDict

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from .errors import ConcurrentModification, ExternalFailure, NotFound
from .models import OwnershipStatus
from .utils import utcnow

logger = logging.getLogger(__name__)


class CreditOwnershipLedger:
    def __init__(self, db, ledger=None, cas_retries: int = 5):
        self.db = db
        self.ledger = ledger
        self.cas_retries = cas_retries

    def _upsert(self, flt: dict, update: dict) -> dict:
        # two first purchases racing on the same key: the loser retries as an update
        for _ in range(max(1, self.cas_retries)):
            try:
                return self.db.ownerships.find_one_and_update(
                    flt, update, upsert=True, return_document=ReturnDocument.AFTER)
            except DuplicateKeyError:
                continue
        raise ConcurrentModification("ownership record changed concurrently")

    def record_purchase(self, buyer: str, listing: dict, credits: int, total_cost: float,
                        token_tx: str, payment_ref=None, block_number=None,
                        purchase_price=None) -> dict:
        # purchasePrice is the price of the first sale, not the current listing price
        if purchase_price is None:
            purchase_price = listing["pricePerCredit"]
        now = utcnow()
        doc = self._upsert(
            {"buyer": buyer, "listing": listing["listingId"], "status": OwnershipStatus.ACTIVE.value},
            {
                "$inc": {"creditsOwned": credits, "totalCost": total_cost},
                "$set": {
                    "blockchain": {"paymentTxHash": payment_ref,
                                   "tokenTransferTxHash": token_tx,
                                   "blockNumber": block_number},
                    "updatedAt": now,
                },
                "$setOnInsert": {
                    "seller": listing["seller"],
                    "project": listing["project"],
                    "creditClaim": listing["creditClaim"],
                    "purchasePrice": purchase_price,
                    "createdAt": now,
                },
            },
        )
        logger.info("ownership %s/%s now %s credits", buyer, listing["listingId"], doc["creditsOwned"])
        return doc

    def reconcile_listing(self, listing_id: str) -> list:
        listing = self.db.listings.find_one({"listingId": listing_id})
        if not listing:
            raise NotFound("Listing not found")

        per_buyer = OrderedDict()
        for sale in listing.get("sales", []):
            agg = per_buyer.setdefault(sale["buyer"], {"credits": 0, "cost": 0.0, "first": sale, "last": sale})
            agg["credits"] += sale["amount"]
            agg["cost"] += sale["amount"] * sale["price"]
            agg["last"] = sale

        out = []
        now = utcnow()
        for buyer, agg in per_buyer.items():
            last = agg["last"]
            out.append(self._upsert(
                {"buyer": buyer, "listing": listing_id, "status": OwnershipStatus.ACTIVE.value},
                {
                    "$set": {
                        "creditsOwned": agg["credits"],
                        "totalCost": agg["cost"],
                        "blockchain": {"paymentTxHash": last.get("paymentRef"),
                                       "tokenTransferTxHash": last["txHash"],
                                       "blockNumber": last.get("blockNumber")},
                        "updatedAt": now,
                    },
                    "$setOnInsert": {
                        "seller": listing["seller"],
                        "project": listing["project"],
                        "creditClaim": listing["creditClaim"],
                        "purchasePrice": agg["first"]["price"],
                        "createdAt": now,
                    },
                },
            ))
        logger.info("reconciled %d ownership rows for %s", len(out), listing_id)
        return out

    # ---- buyer views ----
    def holdings(self, buyer: str) -> list:
        rows = list(self.db.ownerships.find({"buyer": buyer, "status": OwnershipStatus.ACTIVE.value})
                    .sort("createdAt", DESCENDING))
        names = self._project_info({r["project"] for r in rows})
        for r in rows:
            r["projectInfo"] = names.get(r["project"])
        return rows

    def transactions(self, buyer: str, page: int = 1, limit: int = 10) -> dict:
        txs = []
        for listing in self.db.listings.find({"sales.buyer": buyer}):
            for pos, sale in enumerate(listing.get("sales", [])):
                if sale["buyer"] != buyer:
                    continue
                txs.append((sale["soldAt"], pos, {
                    "saleId": sale["saleId"],
                    "listingId": listing["listingId"],
                    "project": listing["project"],
                    "seller": listing["seller"],
                    "amount": sale["amount"],
                    "price": sale["price"],
                    "totalPrice": sale["amount"] * sale["price"],
                    "txHash": sale["txHash"],
                    "blockNumber": sale.get("blockNumber"),
                    "paymentRef": sale.get("paymentRef"),
                    "soldAt": sale["soldAt"],
                }))
        # journal position breaks ties between sales in the same millisecond
        txs = [t for _, _, t in sorted(txs, key=lambda t: t[:2], reverse=True)]
        page, limit = max(1, int(page)), max(1, int(limit))
        return {
            "transactions": txs[(page - 1) * limit: page * limit],
            "total": len(txs),
            "totalPages": math.ceil(len(txs) / limit),
            "currentPage": page,
        }

    def stats(self, buyer: dict) -> dict:
        rows = list(self.db.ownerships.find({"buyer": buyer["userId"], "status": OwnershipStatus.ACTIVE.value}))
        balance = 0
        if self.ledger is not None and buyer.get("walletAddress"):
            try:
                balance = self.ledger.balance_of(buyer["walletAddress"])
            except ExternalFailure as e:
                logger.warning("balance lookup for %s failed: %s", buyer["walletAddress"], e)
        return {
            "totalPurchased": sum(r["creditsOwned"] for r in rows),
            "totalSpent": sum(r["totalCost"] for r in rows),
            "currentBalance": balance,
            # 1 credit = 1 t CO2e
            "offsetEmissions": balance,
        }

    def holdings_by_project(self, buyer: str) -> list:
        groups = OrderedDict()
        for r in self.holdings(buyer):
            g = groups.setdefault(r["project"], {"project": r["project"], "projectInfo": r.get("projectInfo"),
                                                 "creditsOwned": 0, "totalCost": 0.0, "listings": []})
            g["creditsOwned"] += r["creditsOwned"]
            g["totalCost"] += r["totalCost"]
            g["listings"].append(r["listing"])
        return list(groups.values())

    def _project_info(self, project_ids) -> dict:
        if not project_ids:
            return {}
        cur = self.db.projects.find({"projectId": {"$in": sorted(project_ids)}},
                                    {"projectId": 1, "name": 1, "type": 1, "location": 1})
        return {p["projectId"]: {"name": p.get("name"), "type": p.get("type"), "location": p.get("location")}
                for p in cur}
