import logging
import os
from abc import ABC, abstractmethod

import requests
from werkzeug.utils import secure_filename

from .errors import ExternalFailure
from .utils import canonical_json, sha256_hex

logger = logging.getLogger(__name__)

PINATA_BASE_URL = "https://api.pinata.cloud/pinning"


class FileStore(ABC):
    @abstractmethod
    def put(self, data: bytes, filename: str) -> str:
        """Store a blob and return its content identifier."""

    def put_json(self, doc: dict, filename: str = "metadata.json") -> str:
        return self.put(canonical_json(doc).encode("utf-8"), filename)


class LocalFileStore(FileStore):
    """Content-addressed directory: the id is the sha256 of the bytes."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        os.makedirs(base_dir, exist_ok=True)

    def path_for(self, digest: str):
        for name in os.listdir(self.base_dir):
            if name.startswith(digest + "_"):
                return os.path.join(self.base_dir, name)
        return None

    def put(self, data: bytes, filename: str) -> str:
        digest = sha256_hex(data)
        if self.path_for(digest):
            return digest
        stored_name = f"{digest}_{secure_filename(filename or 'evidence.bin') or 'evidence.bin'}"
        try:
            with open(os.path.join(self.base_dir, stored_name), "wb") as out:
                out.write(data)
        except OSError as e:
            raise ExternalFailure(f"evidence write failed: {e}") from e
        return digest


class PinataFileStore(FileStore):
    def __init__(self, jwt: str, base_url: str = PINATA_BASE_URL, timeout: float = 60):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers["Authorization"] = f"Bearer {jwt}"

    def _ipfs_hash(self, r) -> str:
        r.raise_for_status()
        cid = r.json().get("IpfsHash")
        if not cid:
            raise ExternalFailure("IPFS pin response has no IpfsHash")
        return cid

    def put(self, data: bytes, filename: str) -> str:
        files = {"file": (secure_filename(filename or "upload") or "upload", data, "application/octet-stream")}
        try:
            r = self.session.post(f"{self.base_url}/pinFileToIPFS", files=files, timeout=self.timeout)
            return self._ipfs_hash(r)
        except (requests.RequestException, ValueError) as e:
            logger.warning("IPFS file upload failed: %s", e)
            raise ExternalFailure("Failed to upload file to IPFS") from e

    def put_json(self, doc: dict, filename: str = "metadata.json") -> str:
        try:
            r = self.session.post(f"{self.base_url}/pinJSONToIPFS",
                                  json={"pinataContent": doc, "pinataMetadata": {"name": filename}},
                                  timeout=self.timeout)
            return self._ipfs_hash(r)
        except (requests.RequestException, ValueError) as e:
            logger.warning("IPFS JSON upload failed: %s", e)
            raise ExternalFailure("Failed to upload JSON metadata to IPFS") from e
