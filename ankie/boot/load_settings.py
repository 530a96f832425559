# ankie/boot/load_settings.py

import os
import yaml
import argparse
import logging
from typing import Dict, Any, Optional

_log = logging.getLogger(__name__)

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))


def resolve_path(path: str) -> str:
    """Resolve a settings-relative path against the repository root."""
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


def read_yaml(path: str) -> Dict[str, Any]:
    """
    Parse a YAML file into a dict. A missing file yields empty defaults.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
            _log.info("Settings loaded from %s", path)
            return data
    except FileNotFoundError:
        _log.warning("Settings file not found at %s. Using empty defaults.", path)
        return {}


class AppConfigLoader:
    """
    Singleton-style settings loader.

    - Loads the base YAML from settings/agent-settings.yaml (or ANKIE_SETTINGS)
    - Exposes a copy via get_config()
    - Applies CLI arg overrides via merge_with_args()
    """
    _instance = None
    _config: Optional[Dict[str, Any]] = None

    def __new__(cls) -> "AppConfigLoader":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        # Load once per process
        if self._config is None:
            _log.info("Initializing application settings.")
            self._load_from_yaml()

    # ──────────────────────────────────────────────────────────────────────────
    # Internal loading
    # ──────────────────────────────────────────────────────────────────────────
    def _load_from_yaml(self) -> None:
        settings_path = os.getenv("ANKIE_SETTINGS") or os.path.join(
            PROJECT_ROOT, "settings", "agent-settings.yaml"
        )
        try:
            type(self)._config = read_yaml(settings_path)
        except yaml.YAMLError as exc:
            _log.error("Failed to parse settings: %s", exc, exc_info=True)
            type(self)._config = {}

    # ──────────────────────────────────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────────────────────────────────
    def get_config(self) -> Dict[str, Any]:
        """
        Return a shallow copy of the loaded settings.
        """
        _log.debug("Providing a copy of the loaded settings.")
        return dict(self._config or {})

    def get_section(self, name: str) -> Dict[str, Any]:
        """Return a copy of one top-level section (empty dict when absent)."""
        return dict((self._config or {}).get(name) or {})

    def merge_with_args(self, args: argparse.Namespace) -> Dict[str, Any]:
        """
        Merge CLI flags into the loaded configuration.
        CLI always takes precedence over YAML.

        Returns a new merged dict (does not mutate the internal cache).
        """
        _log.info("Merging CLI arguments into settings.")
        cfg = {k: (dict(v) if isinstance(v, dict) else v) for k, v in self.get_config().items()}

        # Model overrides
        models_cfg = cfg.setdefault("models", {})
        if getattr(args, "model", None) is not None:
            models_cfg["default_model"] = args.model

        # Checkpoint backend overrides
        ckpt_cfg = cfg.setdefault("checkpoints", {})
        if getattr(args, "checkpoints", None) is not None:
            ckpt_cfg["backend"] = args.checkpoints
        if getattr(args, "sqlite_path", None) is not None:
            ckpt_cfg["sqlite_path"] = args.sqlite_path

        if getattr(args, "agent", None) is not None:
            cfg["supervisor_id"] = args.agent

        # Logging overrides
        log_cfg = cfg.setdefault("logging", {})
        # Verbose flag bumps level to DEBUG
        if getattr(args, "verbose", False) or getattr(args, "debug", False):
            log_cfg["level"] = "DEBUG"

        _log.info("Settings merge complete.")
        return cfg

    @classmethod
    def reset(cls) -> None:
        """Forget the cached settings so the next access reloads them."""
        cls._config = None
