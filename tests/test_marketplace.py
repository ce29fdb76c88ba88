from datetime import timedelta

import pytest

from conftest import BUYER_WALLET, DEV_WALLET
from greenblocks.errors import (ConcurrentModification, ExternalFailure, Forbidden, InvalidArgument, InvalidState,
                               NotFound)
from greenblocks.ledger import eth_to_wei
from greenblocks.utils import utcnow


def conserved(listing):
    return listing["creditsAvailable"] + sum(s["amount"] for s in listing["sales"]) == listing["creditsListed"]


def test_list_credits(services, developer, issued_claim):
    listing = services.market.list_credits(developer, issued_claim["claimId"], 100)
    assert listing["listingId"].startswith("MKT-")
    assert listing["status"] == "active"
    assert listing["creditsListed"] == listing["creditsAvailable"] == 100
    assert listing["creditsReserved"] == 0
    assert listing["pricePerCredit"] == 0.001
    assert listing["seller"] == developer["userId"]


def test_cannot_list_more_than_approved(services, developer, issued_claim):
    with pytest.raises(InvalidArgument):
        services.market.list_credits(developer, issued_claim["claimId"], 600)


def test_one_open_listing_per_claim(services, developer, listing):
    with pytest.raises(InvalidState):
        services.market.list_credits(developer, listing["creditClaim"], 10)


def test_list_credits_preconditions(services, developer, buyer, regulator, ledger, inspected_claim):
    cid = inspected_claim["claimId"]
    with pytest.raises(NotFound):
        services.market.list_credits(developer, "CLM-0-0000", 10)
    with pytest.raises(Forbidden):
        services.market.list_credits(buyer, cid, 10)
    with pytest.raises(InvalidState):
        services.market.list_credits(developer, cid, 10)

    services.claims.issue_credits(regulator, cid, 500)
    ledger.balances[DEV_WALLET] = 5
    with pytest.raises(InvalidArgument, match="balance"):
        services.market.list_credits(developer, cid, 10)
    ledger.balance_fail = ExternalFailure("balance lookup failed")
    with pytest.raises(ExternalFailure):
        services.market.list_credits(developer, cid, 10)


def test_purchase_sequence_and_sell_out(services, buyer, buyer2, developer, listing):
    lid = listing["listingId"]
    out = services.market.buy_credits(buyer, lid, 40)
    assert out["listing"]["status"] == "partial"
    assert out["listing"]["creditsAvailable"] == 60
    assert out["ownership"]["creditsOwned"] == 40

    out = services.market.buy_credits(buyer2, lid, 60)
    assert out["listing"]["status"] == "sold"
    assert out["listing"]["creditsAvailable"] == 0
    assert conserved(out["listing"])

    third = services.users.register("Buyer C", "c@example.com", "credit_buyer", "0x" + "66" * 20)
    with pytest.raises(InvalidState):
        services.market.buy_credits(third, lid, 1)

    claim = services.db.claims.find_one({"claimId": listing["creditClaim"]})
    assert claim["activeListing"] is None


def test_repeat_purchases_accumulate_one_ownership(services, buyer, listing):
    lid = listing["listingId"]
    services.market.buy_credits(buyer, lid, 10)
    services.market.buy_credits(buyer, lid, 15)
    rows = list(services.db.ownerships.find({"buyer": buyer["userId"], "listing": lid}))
    assert len(rows) == 1
    assert rows[0]["creditsOwned"] == 25
    assert rows[0]["totalCost"] == pytest.approx(10 * 0.01 + 15 * 0.01)
    assert rows[0]["purchasePrice"] == 0.01


def test_buy_argument_checks(services, buyer, developer, listing):
    lid = listing["listingId"]
    with pytest.raises(Forbidden):
        services.market.buy_credits(developer, lid, 1)
    for bad in (0, -1, 101, 1.5):
        with pytest.raises(InvalidArgument):
            services.market.buy_credits(buyer, lid, bad)
    with pytest.raises(NotFound):
        services.market.buy_credits(buyer, "MKT-0-0000", 1)


def test_failed_transfer_is_a_no_op(services, buyer, ledger, ledger_down, listing):
    lid = listing["listingId"]
    services.market.buy_credits(buyer, lid, 10)
    before = services.db.listings.find_one({"listingId": lid})
    owned_before = services.db.ownerships.find_one({"buyer": buyer["userId"], "listing": lid})

    ledger.fail = ledger_down
    with pytest.raises(ExternalFailure):
        services.market.buy_credits(buyer, lid, 20)

    after = services.db.listings.find_one({"listingId": lid})
    owned_after = services.db.ownerships.find_one({"buyer": buyer["userId"], "listing": lid})
    for field in ("creditsAvailable", "creditsReserved", "sales", "status"):
        assert after[field] == before[field]
    assert owned_after["creditsOwned"] == owned_before["creditsOwned"]
    assert owned_after["totalCost"] == owned_before["totalCost"]


def test_concurrent_purchase_cannot_oversell(services, buyer, buyer2, ledger, listing):
    lid = listing["listingId"]
    seen = {}

    def rival_buys_everything():
        with pytest.raises(InvalidState) as exc:
            services.market.buy_credits(buyer2, lid, 100)
        seen["err"] = exc.value
        seen["rival"] = services.market.buy_credits(buyer2, lid, 30)

    ledger.during_transfer = rival_buys_everything
    out = services.market.buy_credits(buyer, lid, 70)

    assert seen["err"].details["free"] == 30
    final = services.db.listings.find_one({"listingId": lid})
    assert final["creditsAvailable"] == 0
    assert final["creditsReserved"] == 0
    assert final["status"] == "sold"
    assert conserved(final)
    assert out["listing"]["status"] == "sold"
    owned = sum(o["creditsOwned"] for o in services.db.ownerships.find({"listing": lid}))
    assert owned == 100


def test_cancel_refused_while_purchase_in_flight(services, developer, buyer, ledger, listing):
    lid = listing["listingId"]
    seen = {}

    def seller_cancels():
        with pytest.raises(InvalidState) as exc:
            services.market.cancel_listing(developer, lid)
        seen["err"] = exc.value

    ledger.during_transfer = seller_cancels
    services.market.buy_credits(buyer, lid, 5)
    assert "in progress" in seen["err"].message
    assert services.market.get_listing(lid)["status"] == "partial"


def test_cancel_listing(services, developer, buyer, listing):
    lid = listing["listingId"]
    services.market.buy_credits(buyer, lid, 30)
    with pytest.raises(Forbidden):
        services.market.cancel_listing(buyer, lid)
    cancelled = services.market.cancel_listing(developer, lid)
    assert cancelled["status"] == "cancelled"
    assert cancelled["creditsAvailable"] == 70
    with pytest.raises(InvalidState):
        services.market.buy_credits(buyer, lid, 1)
    with pytest.raises(InvalidState):
        services.market.cancel_listing(developer, lid)

    relist = services.market.list_credits(developer, listing["creditClaim"], 470)
    assert relist["status"] == "active"
    with pytest.raises(InvalidArgument):
        services.market.list_credits(developer, listing["creditClaim"], 471)


def test_update_listing_price(services, developer, buyer, listing):
    lid = listing["listingId"]
    services.market.buy_credits(buyer, lid, 10)
    updated = services.market.update_listing_price(developer, lid, 0.02)
    assert updated["pricePerCredit"] == 0.02
    assert updated["sales"][0]["price"] == 0.01
    for bad in (0, -1, "cheap", float("inf"), float("nan")):
        with pytest.raises(InvalidArgument):
            services.market.update_listing_price(developer, lid, bad)
    with pytest.raises(Forbidden):
        services.market.update_listing_price(buyer, lid, 0.5)
    services.market.cancel_listing(developer, lid)
    with pytest.raises(InvalidState):
        services.market.update_listing_price(developer, lid, 0.03)


def test_payment_reference_is_verified_and_single_use(services, buyer, payments, listing):
    lid = listing["listingId"]
    payments.add("0xpay1", BUYER_WALLET, DEV_WALLET, eth_to_wei(0.1))
    out = services.market.buy_credits(buyer, lid, 10, "0xpay1")
    assert out["sale"]["paymentRef"] == "0xpay1"
    assert out["ownership"]["blockchain"]["paymentTxHash"] == "0xpay1"

    with pytest.raises(InvalidArgument, match="already been used"):
        services.market.buy_credits(buyer, lid, 10, "0xpay1")
    assert services.market.get_listing(lid)["creditsReserved"] == 0


def test_underpaid_reference_is_rejected(services, buyer, payments, ledger, listing):
    lid = listing["listingId"]
    payments.add("0xcheap", BUYER_WALLET, DEV_WALLET, eth_to_wei(0.01))
    with pytest.raises(InvalidArgument):
        services.market.buy_credits(buyer, lid, 10, "0xcheap")
    after = services.market.get_listing(lid)
    assert after["creditsAvailable"] == 100
    assert after["creditsReserved"] == 0
    assert ledger.transfers[-1][1] != BUYER_WALLET


def test_payment_ref_released_when_transfer_fails(services, buyer, payments, ledger, ledger_down, listing):
    lid = listing["listingId"]
    payments.add("0xpay2", BUYER_WALLET, DEV_WALLET, eth_to_wei(0.1))
    ledger.fail = ledger_down
    with pytest.raises(ExternalFailure):
        services.market.buy_credits(buyer, lid, 10, "0xpay2")
    assert services.db.payment_refs.count_documents({}) == 0
    ledger.fail = None
    assert services.market.buy_credits(buyer, lid, 10, "0xpay2")["sale"]["paymentRef"] == "0xpay2"


def test_browse_and_my_listings(services, developer, buyer, listing):
    assert services.market.browse_listings()["total"] == 1
    services.market.buy_credits(buyer, listing["listingId"], 10)
    assert services.market.browse_listings()["listings"][0]["status"] == "partial"
    assert services.market.browse_listings(status="sold")["total"] == 0
    assert [l["listingId"] for l in services.market.my_listings(developer)] == [listing["listingId"]]


def test_purchase_notifies_buyer(services, buyer, notifier, listing):
    services.market.buy_credits(buyer, listing["listingId"], 10)
    assert notifier.sent[-1][0] == buyer["email"]
    assert "Purchase confirmed" in notifier.sent[-1][1]


def test_payment_required_when_configured(services, buyer, listing):
    services.market.require_payment = True
    with pytest.raises(InvalidArgument, match="payment"):
        services.market.buy_credits(buyer, listing["listingId"], 1)
    assert services.market.get_listing(listing["listingId"])["creditsReserved"] == 0


def add_hold(services, lid, amount, age_seconds, buyer_id="USR-gone"):
    hold = {"holdId": "hold-%d-%d" % (amount, age_seconds), "buyer": buyer_id, "amount": amount,
            "heldAt": utcnow() - timedelta(seconds=age_seconds)}
    services.db.listings.update_one({"listingId": lid},
                                    {"$inc": {"creditsReserved": amount}, "$push": {"holds": hold}})
    return hold


def test_transfer_crash_rolls_back_hold(services, buyer, ledger, listing):
    lid = listing["listingId"]

    class WorkerKilled(BaseException):
        pass

    ledger.fail = WorkerKilled()
    with pytest.raises(WorkerKilled):
        services.market.buy_credits(buyer, lid, 30)
    after = services.market.get_listing(lid)
    assert after["creditsReserved"] == 0
    assert after["holds"] == []


def test_abandoned_hold_released_on_cancel(services, developer, listing):
    lid = listing["listingId"]
    hold = add_hold(services, lid, 30, age_seconds=3600)
    services.db.payment_refs.insert_one({"txHash": "0xstale", "holdId": hold["holdId"]})

    cancelled = services.market.cancel_listing(developer, lid)
    assert cancelled["status"] == "cancelled"
    assert cancelled["creditsReserved"] == 0
    assert cancelled["holds"] == []
    assert services.db.payment_refs.count_documents({}) == 0


def test_fresh_hold_still_blocks_cancel(services, developer, listing):
    lid = listing["listingId"]
    add_hold(services, lid, 30, age_seconds=5)
    with pytest.raises(InvalidState, match="in progress"):
        services.market.cancel_listing(developer, lid)


def test_abandoned_hold_frees_units_for_buyers(services, buyer, listing):
    lid = listing["listingId"]
    add_hold(services, lid, 30, age_seconds=3600)
    out = services.market.buy_credits(buyer, lid, 80)
    assert out["listing"]["creditsAvailable"] == 20
    assert out["listing"]["creditsReserved"] == 0
    assert conserved(out["listing"])


def test_uncommitted_transfer_is_finished_by_recovery(services, buyer, regulator, ledger, listing, monkeypatch):
    lid = listing["listingId"]

    def gives_up(listing_id, hold_id, sale):
        raise ConcurrentModification("Listing changed concurrently while committing the sale")

    monkeypatch.setattr(services.market, "_commit_sale", gives_up)
    with pytest.raises(ConcurrentModification):
        services.market.buy_credits(buyer, lid, 30)
    monkeypatch.undo()

    stuck = services.market.get_listing(lid)
    assert stuck["creditsReserved"] == 30
    assert stuck["creditsAvailable"] == 100
    journal = services.db.pending_sales.find_one({"listingId": lid})
    assert journal["sale"]["txHash"] == ledger.transfers[-1][3]

    # nothing to settle while the hold is fresh
    assert services.market.recover_listing(regulator, lid)["listing"]["creditsReserved"] == 30

    services.market.lock_ttl = 0
    services.db.listings.update_one({"listingId": lid},
                                    {"$set": {"holds.0.heldAt": utcnow() - timedelta(minutes=5)}})
    out = services.market.recover_listing(regulator, lid)
    assert out["listing"]["creditsAvailable"] == 70
    assert out["listing"]["creditsReserved"] == 0
    assert [s["txHash"] for s in out["listing"]["sales"]] == [journal["sale"]["txHash"]]
    assert [(o["buyer"], o["creditsOwned"]) for o in out["ownerships"]] == [(buyer["userId"], 30)]
    assert services.db.pending_sales.count_documents({}) == 0
    assert len(ledger.transfers) == 2


def test_recover_listing_is_regulator_only(services, developer, listing):
    with pytest.raises(Forbidden):
        services.market.recover_listing(developer, listing["listingId"])


def test_price_change_during_transfer_keeps_sale_price(services, developer, buyer, ledger, listing):
    lid = listing["listingId"]
    ledger.during_transfer = lambda: services.market.update_listing_price(developer, lid, 0.5)
    out = services.market.buy_credits(buyer, lid, 10)

    assert out["sale"]["price"] == 0.01
    assert out["ownership"]["purchasePrice"] == 0.01
    assert out["ownership"]["totalCost"] == pytest.approx(0.1)
    assert out["listing"]["pricePerCredit"] == 0.5
    rebuilt = services.ownership.reconcile_listing(lid)
    assert rebuilt[0]["purchasePrice"] == 0.01
