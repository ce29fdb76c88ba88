"""Token ledger and payment verification over an EVM JSON-RPC endpoint.

The engines only see the small ``TokenLedger`` / ``PaymentVerifier``
interfaces; ``Web3TokenLedger`` and ``Web3PaymentVerifier`` are the web3.py
adapters. Every collaborator failure leaves here as ``ExternalFailure``.
"""
import logging
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from time import sleep
from typing import Dict, NamedTuple, Optional

import requests
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception

from .errors import ExternalFailure, InvalidArgument

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {"inputs": [], "name": "decimals", "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "address", "name": "account", "type": "address"}],
     "name": "balanceOf", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
     "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "address", "name": "to", "type": "address"},
                {"internalType": "uint256", "name": "amount", "type": "uint256"}],
     "name": "transfer", "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
     "stateMutability": "nonpayable", "type": "function"},
]

# signer credential labels the engines ask for
REGULATOR = "regulator"
ESCROW = "escrow"

_CHAIN_ERRORS = (Web3Exception, requests.RequestException, ValueError, ConnectionError, OSError)


class TxReceipt(NamedTuple):
    tx_hash: str
    block_number: Optional[int]


class PaymentProof(NamedTuple):
    tx_hash: str
    block_number: Optional[int]
    value_wei: int


class TokenLedger(ABC):
    @abstractmethod
    def balance_of(self, address: str) -> int:
        """Whole-token balance of ``address``."""

    @abstractmethod
    def transfer(self, signer: str, to_address: str, amount: int) -> TxReceipt:
        """Move ``amount`` whole tokens from ``signer`` to ``to_address``; blocks until mined."""


class PaymentVerifier(ABC):
    @abstractmethod
    def verify(self, tx_hash: str, payer: str, payee: str, min_amount_wei: int) -> PaymentProof:
        """Raise InvalidArgument unless tx_hash is a confirmed payer->payee payment of at least min_amount_wei."""


def eth_to_wei(amount) -> int:
    return int(Web3.to_wei(Decimal(str(amount)), "ether"))


# --- Chain helpers (v5/v6 compatible) ---
def _signed_raw_bytes(signed):
    # web3.py v6+: signed.raw_transaction ; v5: signed.rawTransaction
    return getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction")


def _hex(h) -> str:
    s = h.hex() if hasattr(h, "hex") else str(h)
    return s if s.startswith("0x") else "0x" + s


def _bump(fee):
    # ~12.5% bump (clients typically require >=10%)
    return int(fee + fee // 8)


def make_web3(rpc_url: str, timeout: float) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


class Web3TokenLedger(TokenLedger):
    def __init__(self, w3: Web3, token_address: str, signers: Dict[str, str],
                 timeout: float = 120.0, chain_id: Optional[int] = None, attempts: int = 4):
        self.w3 = w3
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
        self.accounts = {name: w3.eth.account.from_key(pk) for name, pk in signers.items() if pk}
        self.timeout = timeout
        self.chain_id = chain_id
        self.attempts = attempts
        self._decimals: Optional[int] = None
        # one in-flight send per signer so pending nonces do not collide
        self._locks = {name: threading.Lock() for name in self.accounts}

    @property
    def decimals(self) -> int:
        if self._decimals is None:
            try:
                self._decimals = int(self.contract.functions.decimals().call())
            except _CHAIN_ERRORS as e:
                raise ExternalFailure(f"token decimals lookup failed: {e}") from e
        return self._decimals

    def balance_of(self, address: str) -> int:
        try:
            raw = self.contract.functions.balanceOf(Web3.to_checksum_address(address)).call()
        except _CHAIN_ERRORS as e:
            raise ExternalFailure(f"balance lookup failed: {e}") from e
        return int(raw) // (10 ** self.decimals)

    def transfer(self, signer: str, to_address: str, amount: int) -> TxReceipt:
        acct = self.accounts.get(signer)
        if acct is None:
            raise ExternalFailure(f"no signing key configured for '{signer}'")
        units = int(amount) * (10 ** self.decimals)
        to = Web3.to_checksum_address(to_address)
        with self._locks[signer]:
            try:
                tx_hash = self._send_with_bump(acct, to, units)
                logger.info("token transfer submitted: %s (%s -> %s, %s)", tx_hash, signer, to, amount)
                rcpt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
            except TimeExhausted as e:
                raise ExternalFailure(f"token transfer not mined within {self.timeout}s") from e
            except _CHAIN_ERRORS as e:
                raise ExternalFailure(f"token transfer failed: {e}") from e
        if rcpt.get("status", 1) != 1:
            raise ExternalFailure(f"token transfer reverted: {tx_hash}")
        logger.info("token transfer confirmed: %s in block %s", tx_hash, rcpt.get("blockNumber"))
        return TxReceipt(tx_hash, rcpt.get("blockNumber"))

    def _send_with_bump(self, acct, to: str, units: int) -> str:
        # baseline fees from pending base fee
        base = self.w3.eth.get_block("pending")["baseFeePerGas"]
        max_priority = self.w3.to_wei(2, "gwei")
        max_fee = base * 2 + max_priority
        nonce = self.w3.eth.get_transaction_count(acct.address, "pending")
        chain_id = self.chain_id or self.w3.eth.chain_id

        last_exc = None
        for _ in range(self.attempts):
            tx = self.contract.functions.transfer(to, units).build_transaction({
                "from": acct.address,
                "nonce": nonce,
                "maxFeePerGas": max_fee,
                "maxPriorityFeePerGas": max_priority,
                "chainId": chain_id,
            })
            signed = self.w3.eth.account.sign_transaction(tx, acct.key)
            try:
                return _hex(self.w3.eth.send_raw_transaction(_signed_raw_bytes(signed)))
            except ValueError as e:
                msg = str(e)
                if "underpriced" in msg or "fee too low" in msg:
                    max_fee, max_priority = _bump(max_fee), _bump(max_priority)
                elif "nonce too low" in msg:
                    nonce = self.w3.eth.get_transaction_count(acct.address, "pending")
                else:
                    raise
                last_exc = e
                sleep(1)
        raise last_exc if last_exc else ExternalFailure("token transfer not accepted after retries")


class Web3PaymentVerifier(PaymentVerifier):
    def __init__(self, w3: Web3):
        self.w3 = w3

    def verify(self, tx_hash: str, payer: str, payee: str, min_amount_wei: int) -> PaymentProof:
        try:
            rcpt = self.w3.eth.get_transaction_receipt(tx_hash)
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            raise InvalidArgument("payment transaction not found or not confirmed")
        except _CHAIN_ERRORS as e:
            raise ExternalFailure(f"payment lookup failed: {e}") from e
        if not rcpt or rcpt.get("status") != 1:
            raise InvalidArgument("payment transaction failed or is not confirmed")
        if (tx.get("from") or "").lower() != payer.lower():
            raise InvalidArgument("payment was not sent from the buyer wallet")
        if (tx.get("to") or "").lower() != payee.lower():
            raise InvalidArgument("payment was not sent to the seller wallet")
        if int(tx.get("value", 0)) < int(min_amount_wei):
            raise InvalidArgument("payment amount is below the purchase total",
                                  required_wei=int(min_amount_wei), paid_wei=int(tx.get("value", 0)))
        return PaymentProof(_hex(tx_hash), rcpt.get("blockNumber"), int(tx.get("value", 0)))
