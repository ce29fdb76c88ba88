import pathlib
import sys
from collections import defaultdict
from datetime import timedelta

import mongomock
import pytest

# Ensure repo root is on PYTHONPATH for direct package imports.
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from greenblocks.config import Settings  # noqa: E402
from greenblocks.errors import ExternalFailure, InvalidArgument  # noqa: E402
from greenblocks.filestore import FileStore  # noqa: E402
from greenblocks.ledger import PaymentProof, PaymentVerifier, TokenLedger, TxReceipt  # noqa: E402
from greenblocks.notifier import Notifier  # noqa: E402
from greenblocks.services import build_services  # noqa: E402
from greenblocks.utils import sha256_hex, utcnow  # noqa: E402

DEV_WALLET = "0x" + "11" * 20
BUYER_WALLET = "0x" + "22" * 20
BUYER2_WALLET = "0x" + "33" * 20
REG_WALLET = "0x" + "44" * 20
REG2_WALLET = "0x" + "55" * 20


class FakeTokenLedger(TokenLedger):
    """In-memory ledger; ``fail`` makes transfers raise, ``during_transfer`` runs mid-call."""

    def __init__(self):
        self.balances = defaultdict(int)
        self.transfers = []
        self.fail = None
        self.balance_fail = None
        self.during_transfer = None
        self.block = 100

    def balance_of(self, address):
        if self.balance_fail:
            raise self.balance_fail
        return self.balances[address.lower()]

    def transfer(self, signer, to_address, amount):
        if self.during_transfer is not None:
            cb, self.during_transfer = self.during_transfer, None
            cb()
        if self.fail:
            raise self.fail
        self.block += 1
        tx_hash = "0x%064x" % self.block
        self.balances[to_address.lower()] += amount
        self.transfers.append((signer, to_address.lower(), amount, tx_hash))
        return TxReceipt(tx_hash, self.block)


class FakePaymentVerifier(PaymentVerifier):
    def __init__(self):
        self.payments = {}

    def add(self, tx_hash, payer, payee, value_wei):
        self.payments[tx_hash] = (payer.lower(), payee.lower(), value_wei)

    def verify(self, tx_hash, payer, payee, min_amount_wei):
        if tx_hash not in self.payments:
            raise InvalidArgument("payment transaction not found or not confirmed")
        p_from, p_to, value = self.payments[tx_hash]
        if p_from != payer.lower() or p_to != payee.lower() or value < min_amount_wei:
            raise InvalidArgument("payment does not match the purchase")
        return PaymentProof(tx_hash, 7, value)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, recipient, subject, body):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((recipient, subject, body))


class MemoryFileStore(FileStore):
    def __init__(self):
        self.blobs = {}

    def put(self, data, filename):
        cid = "mem-" + sha256_hex(data)[:16]
        self.blobs[cid] = (filename, data)
        return cid


@pytest.fixture
def db():
    return mongomock.MongoClient()["greenblocks_test"]


@pytest.fixture
def ledger():
    return FakeTokenLedger()


@pytest.fixture
def payments():
    return FakePaymentVerifier()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def filestore():
    return MemoryFileStore()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def services(settings, db, ledger, payments, filestore, notifier):
    return build_services(settings, db=db, ledger=ledger, payment_verifier=payments,
                          filestore=filestore, notifier=notifier)


@pytest.fixture
def developer(services):
    return services.users.register("Dev Co", "dev@example.com", "project_developer", DEV_WALLET, "Dev Co Ltd")


@pytest.fixture
def buyer(services):
    return services.users.register("Buyer A", "a@example.com", "credit_buyer", BUYER_WALLET)


@pytest.fixture
def buyer2(services):
    return services.users.register("Buyer B", "b@example.com", "credit_buyer", BUYER2_WALLET)


@pytest.fixture
def regulator(services):
    return services.users.register("Regulator", "reg@example.com", "regulatory_body", REG_WALLET)


@pytest.fixture
def regulator2(services):
    return services.users.register("Inspector Two", "reg2@example.com", "regulatory_body", REG2_WALLET)


def future(days=7):
    return (utcnow() + timedelta(days=days)).isoformat()


def project_payload(**overrides):
    data = {
        "name": "Solar Farm",
        "description": "50 MW solar plant",
        "type": "renewable_energy",
        "location": {"country": "IN", "state": "Rajasthan", "address": "Jodhpur",
                     "coordinates": {"latitude": 26.2, "longitude": 73.0}},
        "projectDetails": {"startDate": "2024-01-01T00:00:00Z", "endDate": "2030-01-01T00:00:00Z",
                           "expectedCredits": 1000, "methodology": "ACM0002", "baseline": "grid"},
    }
    data.update(overrides)
    return data


PERIOD = {"startDate": "2024-01-01T00:00:00Z", "endDate": "2024-12-31T00:00:00Z"}


@pytest.fixture
def draft_project(services, developer):
    return services.projects.create_project(developer, project_payload())


@pytest.fixture
def approved_project(services, developer, regulator, draft_project):
    pid = draft_project["projectId"]
    services.projects.submit_project(developer, pid)
    services.projects.approve_project(regulator, pid, "ok")
    services.mrv.submit_mrv(developer, pid, "Q1 meter readings", [("meter.csv", b"kwh,100\n")])
    return services.projects.get_project(pid)


@pytest.fixture
def pending_claim(services, developer, approved_project):
    return services.claims.create_claim(developer, approved_project["projectId"], 1000, PERIOD, ["mrv-1"])


@pytest.fixture
def inspected_claim(services, regulator, pending_claim):
    cid = pending_claim["claimId"]
    services.claims.schedule_inspection(regulator, cid, future())
    return services.claims.complete_inspection(regulator, cid, "meters verified", "passed")


@pytest.fixture
def issued_claim(services, regulator, inspected_claim):
    return services.claims.issue_credits(regulator, inspected_claim["claimId"], 500, "issued")


@pytest.fixture
def listing(services, developer, issued_claim):
    return services.market.list_credits(developer, issued_claim["claimId"], 100, 0.01)


@pytest.fixture
def ledger_down():
    return ExternalFailure("token transfer failed: rpc unavailable")
