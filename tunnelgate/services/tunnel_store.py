"""Tunnel store - file-backed credentials and tunnel record.

The record lives in a single JSON file (``auth/cloudflare-tunnel.json``). Before a
tunnel is provisioned the file may hold only the ``credentials`` block; after
provisioning it holds the full record. Writes are atomic and owner-only.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from tunnelgate.schemas.tunnel import TunnelCredentials, TunnelRecord

logger = logging.getLogger(__name__)

_REVEAL = {"reveal_secrets": True}


class TunnelStore:
    """Reads and writes the persisted tunnel record."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_raw(self) -> dict[str, Any] | None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read tunnel record {self.path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Tunnel record {self.path} is not a JSON object, ignoring")
            return None
        return data

    def _write_raw(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load_record(self) -> TunnelRecord | None:
        """Load the full tunnel record, or None if no tunnel is provisioned."""
        data = self._read_raw()
        if not data or "tunnelId" not in data:
            return None
        try:
            return TunnelRecord.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Tunnel record {self.path} is invalid: {e.error_count()} error(s)")
            return None

    def save_record(self, record: TunnelRecord) -> None:
        self._write_raw(record.model_dump(mode="json", by_alias=True, context=_REVEAL))
        logger.info(f"Saved tunnel record for {record.tunnel_name} ({record.tunnel_id})")

    def delete_record(self) -> None:
        """Remove the record file. A missing file is not an error."""
        try:
            self.path.unlink()
            logger.info(f"Deleted tunnel record {self.path}")
        except FileNotFoundError:
            pass

    def is_configured(self) -> bool:
        """A tunnel is configured once a record with a run token exists."""
        record = self.load_record()
        return record is not None and record.is_configured

    def load_credentials(self) -> TunnelCredentials | None:
        data = self._read_raw()
        if not data or not isinstance(data.get("credentials"), dict):
            return None
        try:
            return TunnelCredentials.model_validate(data["credentials"])
        except ValidationError:
            logger.warning(f"Stored credentials in {self.path} are invalid")
            return None

    def has_credentials(self) -> bool:
        return self.load_credentials() is not None

    def save_credentials(self, credentials: TunnelCredentials) -> None:
        """Store credentials, keeping any tunnel fields already in the file."""
        data = self._read_raw() or {}
        data["credentials"] = credentials.model_dump(mode="json", by_alias=True, context=_REVEAL)
        self._write_raw(data)
        logger.info(f"Saved Cloudflare credentials for account {credentials.account_id}")

    def clear_tunnel(self) -> None:
        """Forget the provisioned tunnel but keep the credentials."""
        data = self._read_raw()
        if not data or not isinstance(data.get("credentials"), dict):
            self.delete_record()
            return
        self._write_raw({"credentials": data["credentials"]})
        logger.info("Cleared tunnel record, credentials kept")
