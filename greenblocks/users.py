from typing import Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from .errors import InvalidArgument, InvalidState, NotFound
from .models import UserRole
from .utils import norm_address, oid, require_text, utcnow


class UserDirectory:
    """Registered platform users; the acting user of every operation is looked up here."""

    def __init__(self, db):
        self.db = db

    def register(self, name: str, email: str, role: str, wallet_address: str,
                 organization: Optional[str] = None) -> dict:
        name = require_text(name, "name")
        email = require_text(email, "email").lower()
        if "@" not in email:
            raise InvalidArgument("email is not valid")
        try:
            role = UserRole(role).value
        except ValueError:
            raise InvalidArgument(f"unknown role: {role!r}")
        wallet = norm_address(wallet_address)
        if wallet is None:
            raise InvalidArgument(f"{wallet_address!r} is not a valid Ethereum address")
        if self.by_wallet(wallet):
            raise InvalidState("Wallet address is already registered")

        _id = ObjectId()
        doc = {
            "_id": _id,
            "userId": str(_id),
            "name": name,
            "email": email,
            "role": role,
            "walletAddress": wallet,
            "organization": organization,
            "isActive": True,
            "createdAt": utcnow(),
        }
        try:
            self.db.users.insert_one(doc)
        except DuplicateKeyError:
            raise InvalidState("User already exists with this email or wallet")
        return doc

    def get(self, user_id: str) -> Optional[dict]:
        try:
            return self.db.users.find_one({"_id": oid(user_id, "user")})
        except NotFound:
            return None

    def require(self, user_id: str) -> dict:
        user = self.get(user_id)
        if not user or not user.get("isActive", True):
            raise NotFound("User not found")
        return user

    def by_wallet(self, wallet_address: str) -> Optional[dict]:
        wallet = norm_address(wallet_address)
        return self.db.users.find_one({"walletAddress": wallet}) if wallet else None
