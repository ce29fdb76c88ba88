"""Wires every component from ``Settings``.

Business code never reads the environment; tests pass their own db and fakes.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .claims import ClaimEngine
from .config import Settings
from .db import connect, ensure_indexes
from .errors import ExternalFailure
from .filestore import FileStore, LocalFileStore, PinataFileStore
from .ledger import (ESCROW, REGULATOR, PaymentVerifier, TokenLedger, Web3PaymentVerifier, Web3TokenLedger,
                     make_web3)
from .marketplace import MarketplaceEngine
from .mrv import MRVStore
from .notifier import LogNotifier, Notifier, SmtpNotifier
from .ownership import CreditOwnershipLedger
from .projects import ProjectRegistry
from .users import UserDirectory

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: object
    users: UserDirectory
    projects: ProjectRegistry
    mrv: MRVStore
    claims: ClaimEngine
    ownership: CreditOwnershipLedger
    market: MarketplaceEngine
    ledger: Optional[TokenLedger]
    filestore: FileStore
    notifier: Notifier


def build_services(settings: Optional[Settings] = None, db=None, ledger: Optional[TokenLedger] = None,
                   payment_verifier: Optional[PaymentVerifier] = None, filestore: Optional[FileStore] = None,
                   notifier: Optional[Notifier] = None) -> Services:
    settings = settings or Settings.from_env()
    if db is None:
        db = connect(settings)
    ensure_indexes(db)

    if ledger is None and settings.chain_enabled:
        w3 = make_web3(settings.web3_rpc_url, settings.ledger_timeout)
        ledger = Web3TokenLedger(
            w3, settings.token_contract_address,
            {REGULATOR: settings.regulator_private_key, ESCROW: settings.escrow_private_key},
            timeout=settings.ledger_timeout, chain_id=settings.chain_id,
        )
        if payment_verifier is None:
            payment_verifier = Web3PaymentVerifier(w3)
    elif ledger is None:
        logger.warning("WEB3_RPC_URL/TOKEN_CONTRACT_ADDRESS/REGULATOR_PRIVATE_KEY not set; "
                       "issuance and purchases will fail")

    if filestore is None:
        filestore = PinataFileStore(settings.pinata_jwt) if settings.pinata_jwt else LocalFileStore(settings.evidence_dir)
    if notifier is None:
        if settings.smtp_host:
            notifier = SmtpNotifier(settings.smtp_host, settings.smtp_port, settings.smtp_user,
                                    settings.smtp_pass, sender=settings.mail_from)
        else:
            notifier = LogNotifier()

    ledger_or_missing = ledger or _MissingLedger()
    users = UserDirectory(db)
    projects = ProjectRegistry(db, notifier=notifier, cas_retries=settings.cas_retries, filestore=filestore)
    ownership = CreditOwnershipLedger(db, ledger=ledger, cas_retries=settings.cas_retries)
    return Services(
        settings=settings,
        db=db,
        users=users,
        projects=projects,
        mrv=MRVStore(db, filestore),
        claims=ClaimEngine(db, projects, users, ledger_or_missing, notifier=notifier,
                           cas_retries=settings.cas_retries, lock_ttl=settings.lock_ttl),
        ownership=ownership,
        market=MarketplaceEngine(db, users, ledger_or_missing, ownership,
                                 payment_verifier=payment_verifier, notifier=notifier,
                                 default_price=settings.default_price_per_credit,
                                 require_payment=settings.require_payment,
                                 cas_retries=settings.cas_retries, lock_ttl=settings.lock_ttl),
        ledger=ledger,
        filestore=filestore,
        notifier=notifier,
    )


class _MissingLedger(TokenLedger):
    def balance_of(self, address: str) -> int:
        raise ExternalFailure("Token ledger is not configured")

    def transfer(self, signer: str, to_address: str, amount: int):
        raise ExternalFailure("Token ledger is not configured")
