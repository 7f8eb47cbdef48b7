"""
Backup Code Service

Generates single-use recovery codes and consumes them one at a time.
"""

import json
import secrets
from dataclasses import dataclass, field

from marketauth.config import settings

# Backup code length (characters)
BACKUP_CODE_LENGTH = 8

# No 0/O or 1/I to keep handwritten codes unambiguous
BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

BACKUP_CODES_FILENAME = "backup-codes.txt"


@dataclass
class BackupCodeConsumption:
    consumed: bool
    remaining_codes: list[str] = field(default_factory=list)


class BackupCodeService:
    """Service for generating and consuming backup codes."""

    def __init__(self, count: int | None = None):
        self.count = settings.backup_code_count if count is None else count

    def generate(self, count: int | None = None) -> list[str]:
        """Generate a set of distinct backup codes."""
        count = self.count if count is None else count
        codes: list[str] = []
        while len(codes) < count:
            code = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
            if code not in codes:
                codes.append(code)
        return codes

    def consume(self, codes: list[str], submitted_code: str | None) -> BackupCodeConsumption:
        """
        Remove ``submitted_code`` from ``codes`` if present.

        Only the matched code is removed; the input list is not mutated.
        """
        remaining = list(codes)
        normalized = self.normalize(submitted_code)
        if not normalized or normalized not in remaining:
            return BackupCodeConsumption(consumed=False, remaining_codes=remaining)

        remaining.remove(normalized)
        return BackupCodeConsumption(consumed=True, remaining_codes=remaining)

    @staticmethod
    def normalize(code: str | None) -> str:
        return (code or "").strip().upper()

    @staticmethod
    def serialize(codes: list[str] | None) -> str | None:
        if codes is None:
            return None
        return json.dumps(codes)

    @staticmethod
    def deserialize(raw: str | None) -> list[str]:
        if not raw:
            return []
        try:
            codes = json.loads(raw)
        except json.JSONDecodeError:
            return []
        return [str(c) for c in codes] if isinstance(codes, list) else []

    @staticmethod
    def render_download(codes: list[str]) -> str:
        """Plain-text artifact, one code per line."""
        return "\n".join(codes)
