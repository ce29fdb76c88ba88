import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_flag(name: str, default: str = "0") -> bool:
    v = (os.getenv(name, default) or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    mongodb_uri: str = "mongodb://localhost:27017"
    db_name: str = "greenblocks"

    # chain
    web3_rpc_url: Optional[str] = None
    token_contract_address: Optional[str] = None
    regulator_private_key: Optional[str] = None
    escrow_private_key: Optional[str] = None
    chain_id: Optional[int] = None
    ledger_timeout: float = 120.0

    # engine behaviour
    cas_retries: int = 5
    default_price_per_credit: float = 0.001
    require_payment: bool = False
    # issuance locks and purchase holds older than this are abandoned
    lock_ttl: float = 600.0

    # collaborators
    evidence_dir: str = "evidence_store"
    pinata_jwt: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    mail_from: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        regulator_pk = os.getenv("REGULATOR_PRIVATE_KEY")
        chain_id = os.getenv("CHAIN_ID")
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            db_name=os.getenv("DB_NAME", "greenblocks"),
            web3_rpc_url=os.getenv("WEB3_RPC_URL"),
            token_contract_address=os.getenv("TOKEN_CONTRACT_ADDRESS"),
            regulator_private_key=regulator_pk,
            # the marketplace signs with the regulator key unless an escrow key is set
            escrow_private_key=os.getenv("ESCROW_PRIVATE_KEY") or regulator_pk,
            chain_id=int(chain_id) if chain_id else None,
            ledger_timeout=float(os.getenv("LEDGER_TIMEOUT", "120")),
            cas_retries=int(os.getenv("CAS_RETRIES", "5")),
            default_price_per_credit=float(os.getenv("DEFAULT_PRICE_PER_CREDIT", "0.001")),
            require_payment=_env_flag("REQUIRE_PAYMENT"),
            lock_ttl=float(os.getenv("LOCK_TTL", "600")),
            evidence_dir=os.getenv("EVIDENCE_DIR", "evidence_store"),
            pinata_jwt=os.getenv("PINATA_JWT"),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_pass=os.getenv("SMTP_PASS"),
            mail_from=os.getenv("MAIL_FROM"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @property
    def chain_enabled(self) -> bool:
        return bool(self.web3_rpc_url and self.token_contract_address and self.regulator_private_key)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
