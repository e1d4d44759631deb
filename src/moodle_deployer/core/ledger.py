"""Ledger persistence for resumable deployments and cleanup.

The ledger is written as YAML after every stage transition so that an
interrupted run can resume and a later cleanup knows what exists.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

from moodle_deployer.core.state import DeploymentLedger

logger = logging.getLogger(__name__)


class LedgerStore:
    """Manages ledger persistence on local disk."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: Ledger file location, usually ``<state_dir>/<deployment>.yaml``.
        """
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        """Check whether a ledger has been written."""
        return self._path.exists()

    def load(self) -> Optional[DeploymentLedger]:
        """Load the ledger, or None if there is none yet."""
        if not self.exists():
            return None
        data = self._read_yaml(self._path)
        if not data:
            return None
        return DeploymentLedger.model_validate(data)

    def save(self, ledger: DeploymentLedger) -> Path:
        """Persist the ledger atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = ledger.model_dump(mode="json")
        self._write_yaml(
            self._path,
            data,
            header=(
                f"# Deployment ledger: {ledger.deployment_name}\n"
                f"# Written: {datetime.utcnow().isoformat()}Z"
            ),
        )
        logger.debug(f"Ledger saved to {self._path}")
        return self._path

    def delete(self) -> None:
        """Remove the ledger file."""
        if self.exists():
            self._path.unlink()
            logger.info(f"Removed ledger {self._path}")

    def _write_yaml(self, path: Path, data: dict[str, Any], header: str = "") -> None:
        """Write data to YAML file with optional header comment."""
        content = ""
        if header:
            content = header + "\n\n"

        content += yaml.safe_dump(
            data,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=120,
        )
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        tmp_path.replace(path)

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        """Read YAML file and return data."""
        content = path.read_text(encoding="utf-8")
        return yaml.safe_load(content) or {}
