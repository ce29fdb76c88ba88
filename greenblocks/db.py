from pymongo import ASCENDING, DESCENDING, MongoClient

from .config import Settings


def connect(settings: Settings):
    client = MongoClient(settings.mongodb_uri)
    return client[settings.db_name]


def ensure_indexes(db) -> None:
    # idempotent
    db.users.create_index("walletAddress", unique=True)
    db.users.create_index("email", unique=True)
    db.projects.create_index("projectId", unique=True)
    db.projects.create_index([("developer", ASCENDING), ("createdAt", DESCENDING)])
    db.projects.create_index("status")
    db.claims.create_index("claimId", unique=True)
    db.claims.create_index([("project", ASCENDING), ("status", ASCENDING)])
    db.claims.create_index([("developer", ASCENDING), ("createdAt", DESCENDING)])
    db.listings.create_index("listingId", unique=True)
    db.listings.create_index([("creditClaim", ASCENDING), ("status", ASCENDING)])
    db.listings.create_index([("seller", ASCENDING), ("createdAt", DESCENDING)])
    db.ownerships.create_index([("buyer", ASCENDING), ("listing", ASCENDING), ("status", ASCENDING)], unique=True)
    db.ownerships.create_index([("buyer", ASCENDING), ("project", ASCENDING)])
    db.payment_refs.create_index("txHash", unique=True)
    db.pending_sales.create_index("holdId", unique=True)
    db.pending_sales.create_index("listingId")
