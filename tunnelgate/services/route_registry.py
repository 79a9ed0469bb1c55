"""Route registry - builds the proxy routing table from plugin manifests."""

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from tunnelgate.core.exceptions import ConfigurationError
from tunnelgate.schemas.tunnel import PluginManifest, RouteMapping

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"
_SKIPPED_DIRS = {"node_modules", "__pycache__"}


class RouteRegistry:
    """Discovers tunnel-enabled plugins and their API keys.

    Each plugin lives in its own directory under ``plugins_dir`` with a
    ``manifest.json``. API keys are read from ``<auth_dir>/<plugin_id>-api-key.txt``.
    """

    def __init__(self, plugins_dir: Path, auth_dir: Path):
        self.plugins_dir = Path(plugins_dir)
        self.auth_dir = Path(auth_dir)
        self.api_keys: dict[str, str | None] = {}

    def _read_manifest(self, manifest_path: Path) -> PluginManifest | None:
        try:
            raw = manifest_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Skipping plugin: cannot read {manifest_path}: {e}")
            return None
        except UnicodeDecodeError as e:
            logger.warning(f"Skipping plugin: {manifest_path} is not valid UTF-8: {e}")
            return None

        try:
            return PluginManifest.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping plugin: malformed JSON in {manifest_path}: {e}")
        except ValidationError as e:
            logger.warning(
                f"Skipping plugin: invalid manifest {manifest_path} "
                f"({e.error_count()} validation error(s)): {e.errors()[0]['msg']}"
            )
        return None

    def discover_routes(self) -> list[RouteMapping]:
        """Build one mapping per plugin whose tunnel block is enabled.

        A misconfigured plugin is logged and skipped. Two plugins claiming the
        same path prefix is a configuration error.

        Raises:
            ConfigurationError: If two plugins declare the same pathPrefix.
        """
        mappings: list[RouteMapping] = []
        owners: dict[str, str] = {}

        if not self.plugins_dir.is_dir():
            logger.warning(f"Plugins directory not found: {self.plugins_dir}")
            self.api_keys = {}
            return mappings

        for entry in sorted(self.plugins_dir.iterdir()):
            if not entry.is_dir() or entry.name.startswith(".") or entry.name in _SKIPPED_DIRS:
                continue

            manifest = self._read_manifest(entry / MANIFEST_FILENAME)
            if manifest is None or manifest.tunnel is None or not manifest.tunnel.enabled:
                continue

            tunnel = manifest.tunnel
            prefix = tunnel.path_prefix
            if prefix in owners:
                raise ConfigurationError(
                    f"Duplicate tunnel pathPrefix '{prefix}' declared by plugins "
                    f"'{owners[prefix]}' and '{manifest.id}'"
                )
            owners[prefix] = manifest.id

            mappings.append(
                RouteMapping(
                    plugin_id=manifest.id,
                    path_prefix=prefix,
                    target_port=tunnel.port,
                    routes=tuple(tunnel.routes),
                )
            )
            logger.info(f"Tunnel route: {prefix}/* -> localhost:{tunnel.port}")

        self.api_keys = {m.plugin_id: self.load_api_key(m.plugin_id) for m in mappings}
        for mapping in mappings:
            needs_key = any(r.auth == "api-key" for r in mapping.routes)
            if needs_key and not self.api_keys[mapping.plugin_id]:
                logger.warning(
                    f"Plugin '{mapping.plugin_id}' has api-key routes but no key file; "
                    "those routes will answer 500 until one is created"
                )
        return mappings

    def load_api_key(self, plugin_id: str) -> str | None:
        """Read a plugin's API key, or None if it is missing or empty."""
        key_file = self.auth_dir / f"{plugin_id}-api-key.txt"
        try:
            key = key_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cannot read API key for plugin '{plugin_id}': {e}")
            return None
        return key or None

    def load(self) -> tuple[list[RouteMapping], dict[str, str | None]]:
        """Discover routes and return them with the resolved API keys."""
        mappings = self.discover_routes()
        return mappings, dict(self.api_keys)
