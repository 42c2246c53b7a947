from __future__ import annotations

import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Protocol

from starlette.concurrency import run_in_threadpool

from app.core.clock import utcnow
from app.core.config import settings
from app.core.errors import ValidationError

logger = logging.getLogger(__name__)


ALLOWED_PROOF_TYPES: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
}

PUBLIC_PREFIX = "/uploads/payment-proofs"


class ProofStorage(Protocol):
    def check(self, content_type: str | None, size: int) -> None: ...

    async def save(self, transaction_id: str, content_type: str, data: bytes) -> str: ...

    async def discard(self, reference: str) -> None: ...


class LocalProofStorage:
    """Writes payment proofs under <root>/payment-proofs and hands back a public path."""

    def __init__(self, root: str | Path | None = None, max_bytes: int | None = None):
        self.root = Path(root or settings.UPLOAD_DIR) / "payment-proofs"
        self.max_bytes = max_bytes or settings.MAX_PROOF_BYTES

    def check(self, content_type: str | None, size: int) -> None:
        if content_type not in ALLOWED_PROOF_TYPES:
            raise ValidationError("Invalid file type. Please upload an image file (JPEG, PNG, GIF).")
        if size <= 0:
            raise ValidationError("Payment proof file is empty.")
        if size > self.max_bytes:
            raise ValidationError(f"File too large. Maximum size is {self.max_bytes // (1024 * 1024)}MB.")

    def _file_name(self, transaction_id: str, content_type: str, now: datetime) -> str:
        ext = ALLOWED_PROOF_TYPES[content_type]
        return f"{transaction_id}-{int(now.timestamp())}-{secrets.token_hex(3)}.{ext}"

    def _write(self, name: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(data)

    async def save(self, transaction_id: str, content_type: str, data: bytes) -> str:
        self.check(content_type, len(data))
        name = self._file_name(transaction_id, content_type, utcnow())
        await run_in_threadpool(self._write, name, data)
        return f"{PUBLIC_PREFIX}/{name}"

    async def discard(self, reference: str) -> None:
        name = reference.rsplit("/", 1)[-1]
        path = self.root / name
        try:
            await run_in_threadpool(path.unlink)
        except FileNotFoundError:
            logger.warning("Payment proof %s already gone", reference)


def get_proof_storage() -> ProofStorage:
    return LocalProofStorage()
