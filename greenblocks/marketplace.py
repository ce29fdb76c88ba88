"""Marketplace listings and purchases.

A purchase runs as a small saga:

1. reserve units on the listing: a hold entry in ``holds`` plus the
   ``creditsReserved`` counter, conditioned on the counters observed by the read;
2. verify and consume the external payment reference, if any;
3. transfer tokens from the escrow signer to the buyer and journal the
   transfer in ``pending_sales``;
4. commit the sale: decrement ``creditsAvailable``, drop the hold, append to
   ``sales`` and set the derived status in one conditional update;
5. accumulate the buyer's ownership row.

Any failure before the transfer returns undoes steps 1-2 so the listing reads
exactly as it did before the call. ``sales`` is authoritative for step 5.
Holds older than ``lock_ttl`` seconds were abandoned by a dead worker:
``recover_listing`` commits them if their transfer was journaled and releases
them otherwise.
"""
import logging
import math
from datetime import timedelta
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from . import authz
from .errors import ConcurrentModification, ExternalFailure, InvalidArgument, InvalidState, NotFound
from .ledger import ESCROW, eth_to_wei
from .models import (LISTING_OPEN, LISTING_TRANSITIONS, ClaimStatus, ListingStatus, OwnershipStatus, UserRole,
                     derive_listing_status, values)
from .notifier import notify
from .store import guarded_transition
from .utils import as_utc, human_id, norm_address, require_positive_int, require_positive_number, utcnow

logger = logging.getLogger(__name__)


class MarketplaceEngine:
    def __init__(self, db, users, ledger, ownership, payment_verifier=None, notifier=None,
                 escrow_signer: str = ESCROW, default_price: float = 0.001,
                 require_payment: bool = False, cas_retries: int = 5, lock_ttl: float = 600.0):
        self.db = db
        self.users = users
        self.ledger = ledger
        self.ownership = ownership
        self.payment_verifier = payment_verifier
        self.notifier = notifier
        self.escrow_signer = escrow_signer
        self.default_price = default_price
        self.require_payment = require_payment
        self.cas_retries = cas_retries
        self.lock_ttl = lock_ttl

    # ---- queries ----
    def get_listing(self, listing_id: str) -> dict:
        listing = self.db.listings.find_one({"listingId": listing_id})
        if not listing:
            raise NotFound("Listing not found")
        return listing

    def browse_listings(self, status: Optional[str] = "active", page: int = 1, limit: int = 10) -> dict:
        if status == ListingStatus.ACTIVE.value:
            q = {"status": {"$in": values(LISTING_OPEN)}}
        elif status:
            q = {"status": status}
        else:
            q = {}
        page, limit = max(1, int(page)), max(1, int(limit))
        total = self.db.listings.count_documents(q)
        listings = list(self.db.listings.find(q).sort("createdAt", DESCENDING)
                        .skip((page - 1) * limit).limit(limit))
        return {"listings": listings, "total": total,
                "totalPages": math.ceil(total / limit), "currentPage": page}

    def my_listings(self, actor: dict) -> list:
        return list(self.db.listings.find({"seller": actor["userId"]}).sort("createdAt", DESCENDING))

    # ---- seller ----
    def list_credits(self, actor: dict, claim_id: str, credits_to_sell, price_per_credit=None) -> dict:
        authz.require_role(actor, UserRole.PROJECT_DEVELOPER, action="list credits")
        claim = self.db.claims.find_one({"claimId": claim_id})
        if not claim:
            raise NotFound("Claim not found")
        authz.require_owner(actor, claim, action="list credits from this claim")
        issuance = claim.get("creditIssuance") or {}
        if claim["status"] != ClaimStatus.APPROVED.value or not issuance.get("creditsIssued"):
            raise InvalidState("Only approved claims with issued credits can be listed", status=claim["status"])

        # units already sold through earlier (cancelled or sold out) listings
        sold = sum(l["creditsListed"] - l["creditsAvailable"]
                   for l in self.db.listings.find({"creditClaim": claim_id}))
        approved = issuance["approvedCredits"]
        credits = require_positive_int(credits_to_sell, "creditsToSell",
                                       upper=approved - sold, upper_label="approved credits not yet sold")
        price = self.default_price if price_per_credit is None else \
            require_positive_number(price_per_credit, "pricePerCredit")

        if self.db.listings.find_one({"creditClaim": claim_id, "status": {"$in": values(LISTING_OPEN)}}):
            raise InvalidState("Credits from this claim are already listed")
        wallet = norm_address(actor.get("walletAddress"))
        if wallet is None:
            raise InvalidArgument("Seller wallet address is invalid")
        balance = self.ledger.balance_of(wallet)
        if balance < credits:
            raise InvalidArgument("Insufficient token balance", balance=balance, required=credits)

        listing_id = human_id(self.db, "MKT")
        slot = self.db.claims.update_one(
            {"claimId": claim_id, "status": ClaimStatus.APPROVED.value, "activeListing": None},
            {"$set": {"activeListing": listing_id}},
        )
        if slot.modified_count != 1:
            raise InvalidState("Credits from this claim are already listed")

        now = utcnow()
        doc = {
            "listingId": listing_id,
            "seller": actor["userId"],
            "project": claim["project"],
            "creditClaim": claim_id,
            "creditsListed": credits,
            "creditsAvailable": credits,
            "creditsReserved": 0,
            "holds": [],
            "pricePerCredit": price,
            "status": ListingStatus.ACTIVE.value,
            "sales": [],
            "createdAt": now,
            "updatedAt": now,
        }
        try:
            self.db.listings.insert_one(doc)
        except PyMongoError:
            self._release_claim(claim_id, listing_id)
            raise
        logger.info("listing %s: %d credits from %s at %s", listing_id, credits, claim_id, price)
        return doc

    def cancel_listing(self, actor: dict, listing_id: str) -> dict:
        current = self.get_listing(listing_id)
        authz.require_owner(actor, current, field="seller", action="cancel this listing")
        if self._stale_holds(current):
            self._expire_holds(listing_id)

        def seller_and_idle(doc):
            authz.require_owner(actor, doc, field="seller", action="cancel this listing")
            if doc.get("creditsReserved", 0) > 0:
                raise InvalidState("A purchase from this listing is in progress")

        listing = guarded_transition(
            self.db.listings, "listingId", listing_id, LISTING_TRANSITIONS, ListingStatus.CANCELLED, "Listing",
            check=seller_and_idle,
            extra_filter={"creditsReserved": 0},
            retries=self.cas_retries,
        )
        self._release_claim(listing["creditClaim"], listing_id)
        logger.info("listing %s cancelled with %d credits unsold", listing_id, listing["creditsAvailable"])
        return listing

    def update_listing_price(self, actor: dict, listing_id: str, new_price) -> dict:
        listing = self.get_listing(listing_id)
        authz.require_owner(actor, listing, field="seller", action="update this listing")
        price = require_positive_number(new_price, "pricePerCredit")
        res = self.db.listings.find_one_and_update(
            {"listingId": listing_id, "status": {"$in": values(LISTING_OPEN)}},
            {"$set": {"pricePerCredit": price, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if res is None:
            raise InvalidState("Cannot update price of a sold or cancelled listing",
                               status=self.get_listing(listing_id)["status"])
        return res

    # ---- buyer ----
    def buy_credits(self, actor: dict, listing_id: str, credits_to_buy, external_payment_ref: Optional[str] = None) -> dict:
        authz.require_role(actor, UserRole.CREDIT_BUYER, action="buy credits")
        listing = self.get_listing(listing_id)
        if listing["status"] not in values(LISTING_OPEN):
            raise InvalidState("Listing is not available for purchase", status=listing["status"])
        credits = require_positive_int(credits_to_buy, "creditsToBuy",
                                       upper=listing["creditsAvailable"], upper_label="available credits")
        wallet = norm_address(actor.get("walletAddress"))
        if wallet is None:
            raise InvalidArgument("Buyer wallet address is invalid")
        if external_payment_ref is None and self.require_payment:
            raise InvalidArgument("A payment transaction reference is required")

        reserved, hold = self._reserve(listing_id, actor["userId"], credits)
        price = reserved["pricePerCredit"]
        total_price = credits * price
        payment_ref = None
        transferred = False
        try:
            if external_payment_ref is not None:
                payment_ref = self._consume_payment(actor, reserved, external_payment_ref, total_price,
                                                    hold["holdId"])
            receipt = self.ledger.transfer(self.escrow_signer, wallet, credits)
            transferred = True
        finally:
            if not transferred:
                self._release(listing_id, hold)
                if payment_ref is not None:
                    self.db.payment_refs.delete_one({"txHash": payment_ref})
                logger.warning("purchase of %d from %s rolled back", credits, listing_id)

        sale = {
            "saleId": str(ObjectId()),
            "buyer": actor["userId"],
            "amount": credits,
            "price": price,
            "txHash": receipt.tx_hash,
            "blockNumber": receipt.block_number,
            "paymentRef": payment_ref,
            "soldAt": utcnow(),
        }
        # journal the transfer before committing; an uncommitted entry is finished by recover_listing
        self.db.pending_sales.insert_one({"holdId": hold["holdId"], "listingId": listing_id,
                                          "sale": sale, "recordedAt": utcnow()})
        listing = self._commit_sale(listing_id, hold["holdId"], sale)

        try:
            ownership = self.ownership.record_purchase(
                actor["userId"], listing, credits, total_price, receipt.tx_hash,
                payment_ref=payment_ref, block_number=receipt.block_number, purchase_price=price)
        except PyMongoError as e:
            logger.error("ownership for sale %s on %s not recorded (%s); reconciling", sale["saleId"], listing_id, e)
            self.ownership.reconcile_listing(listing_id)
            ownership = self.db.ownerships.find_one({"buyer": actor["userId"], "listing": listing_id,
                                                     "status": OwnershipStatus.ACTIVE.value})

        notify(self.notifier, actor.get("email"), "credits_purchased",
               credits=credits, listingId=listing_id, totalPrice=total_price, txHash=receipt.tx_hash)
        return {
            "listing": listing,
            "ownership": ownership,
            "sale": sale,
            "transaction": {"txHash": receipt.tx_hash, "blockNumber": receipt.block_number,
                            "credits": credits, "totalPrice": total_price},
        }

    # ---- recovery ----
    def recover_listing(self, actor: dict, listing_id: str) -> dict:
        """Settle abandoned purchase holds, then rebuild ownership from the sales journal."""
        authz.require_regulator(actor, "reconcile listings")
        listing = self._expire_holds(listing_id)
        return {"listing": listing, "ownerships": self.ownership.reconcile_listing(listing_id)}

    def _stale_holds(self, listing: dict) -> list:
        cutoff = utcnow() - timedelta(seconds=self.lock_ttl)
        return [h for h in listing.get("holds", []) if as_utc(h["heldAt"]) < cutoff]

    def _expire_holds(self, listing_id: str) -> dict:
        listing = self.get_listing(listing_id)
        committed = {s["saleId"] for s in listing.get("sales", [])}
        for hold in self._stale_holds(listing):
            pending = self.db.pending_sales.find_one({"holdId": hold["holdId"]})
            if pending is not None and pending["sale"]["saleId"] not in committed:
                logger.warning("hold %s on %s: committing journaled transfer %s",
                               hold["holdId"], listing_id, pending["sale"]["txHash"])
                self._commit_sale(listing_id, hold["holdId"], pending["sale"])
            else:
                logger.warning("hold %s on %s: releasing %d abandoned credits",
                               hold["holdId"], listing_id, hold["amount"])
                self._release(listing_id, hold)
                self.db.payment_refs.delete_one({"holdId": hold["holdId"]})
        # entries whose sale committed but whose cleanup was lost
        self.db.pending_sales.delete_many({"listingId": listing_id, "sale.saleId": {"$in": sorted(committed)}})
        return self.get_listing(listing_id)

    def _reserve(self, listing_id: str, buyer_id: str, credits: int):
        hold = {"holdId": str(ObjectId()), "buyer": buyer_id, "amount": credits}
        expired = False
        for _ in range(max(1, self.cas_retries) + 1):
            doc = self.get_listing(listing_id)
            if doc["status"] not in values(LISTING_OPEN):
                raise InvalidState("Listing is not available for purchase", status=doc["status"])
            if credits > doc["creditsAvailable"]:
                raise InvalidArgument("creditsToBuy cannot exceed available credits", limit=doc["creditsAvailable"])
            free = doc["creditsAvailable"] - doc.get("creditsReserved", 0)
            if credits > free:
                if not expired and self._stale_holds(doc):
                    expired = True
                    self._expire_holds(listing_id)
                    continue
                raise InvalidState("Credits are held by purchases in progress; retry shortly", free=free)
            hold["heldAt"] = utcnow()
            after = self.db.listings.find_one_and_update(
                {"listingId": listing_id,
                 "status": doc["status"],
                 "creditsAvailable": doc["creditsAvailable"],
                 "creditsReserved": doc.get("creditsReserved", 0),
                 "pricePerCredit": doc["pricePerCredit"]},
                {"$inc": {"creditsReserved": credits}, "$push": {"holds": hold}},
                return_document=ReturnDocument.AFTER,
            )
            if after is not None:
                return after, hold
        raise ConcurrentModification("Listing changed concurrently; retry the purchase")

    def _release(self, listing_id: str, hold: dict) -> None:
        self.db.listings.update_one(
            {"listingId": listing_id, "holds.holdId": hold["holdId"]},
            {"$inc": {"creditsReserved": -hold["amount"]}, "$pull": {"holds": {"holdId": hold["holdId"]}}},
        )

    def _consume_payment(self, actor: dict, listing: dict, tx_hash: str, total_price: float, hold_id: str) -> str:
        if self.payment_verifier is None:
            raise ExternalFailure("Payment verification is not configured")
        seller = self.users.get(listing["seller"])
        seller_wallet = norm_address(seller and seller.get("walletAddress"))
        if seller_wallet is None:
            raise ExternalFailure("Seller wallet address missing or invalid")
        proof = self.payment_verifier.verify(tx_hash, actor["walletAddress"], seller_wallet, eth_to_wei(total_price))
        ref = proof.tx_hash.lower()
        try:
            self.db.payment_refs.insert_one({
                "txHash": ref,
                "listingId": listing["listingId"],
                "holdId": hold_id,
                "buyer": actor["userId"],
                "valueWei": str(proof.value_wei),
                "consumedAt": utcnow(),
            })
        except DuplicateKeyError:
            raise InvalidArgument("Payment transaction has already been used")
        return ref

    def _commit_sale(self, listing_id: str, hold_id: str, sale: dict) -> dict:
        credits = sale["amount"]
        for _ in range(max(1, self.cas_retries)):
            doc = self.get_listing(listing_id)
            remaining = doc["creditsAvailable"] - credits
            status = derive_listing_status(remaining, doc["creditsListed"], doc["status"])
            after = self.db.listings.find_one_and_update(
                {"listingId": listing_id,
                 "creditsAvailable": doc["creditsAvailable"],
                 "holds.holdId": hold_id},
                {"$set": {"creditsAvailable": remaining, "status": status.value, "updatedAt": utcnow()},
                 "$inc": {"creditsReserved": -credits},
                 "$pull": {"holds": {"holdId": hold_id}},
                 "$push": {"sales": sale}},
                return_document=ReturnDocument.AFTER,
            )
            if after is not None:
                logger.info("sale %s on %s: %d credits, tx %s", sale["saleId"], listing_id, credits, sale["txHash"])
                self.db.pending_sales.delete_one({"holdId": hold_id})
                if after["status"] == ListingStatus.SOLD.value:
                    self._release_claim(after["creditClaim"], listing_id)
                return after
        # the hold and the journal entry stay behind for recover_listing
        logger.error("sale %s on %s transferred (%s) but not committed", sale["saleId"], listing_id, sale["txHash"])
        raise ConcurrentModification("Listing changed concurrently while committing the sale", txHash=sale["txHash"])

    def _release_claim(self, claim_id: str, listing_id: str) -> None:
        self.db.claims.update_one({"claimId": claim_id, "activeListing": listing_id},
                                  {"$set": {"activeListing": None}})
