from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest
import yaml

# Add the repository root to the path
repo_root = Path(__file__).parent.parent.resolve()
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

REPO_CONFIG = repo_root / "config"


@pytest.fixture
def write_config(tmp_path) -> Callable[..., Path]:
    """Write a gateway.yaml into tmp_path that uses the shipped manifest, tenants and policies."""

    def _write(manifest: Optional[Path] = None, handler_ms: int = 500) -> Path:
        data = {
            "server": {"default_tenant": "demo", "reload_interval_seconds": 0, "log_level": "WARNING"},
            "paths": {
                "manifest": str(manifest or REPO_CONFIG / "manifest" / "tools.yaml"),
                "tenants": str(REPO_CONFIG / "tenants"),
                "policies": str(REPO_CONFIG / "policies"),
            },
            "timeouts": {"store_ms": 250, "handler_ms": handler_ms},
            "outbox": {"path": "outbox.jsonl"},
            "auth": {"mode": "jwt"},
        }
        path = tmp_path / "gateway.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write
