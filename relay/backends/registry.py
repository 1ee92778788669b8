"""Backend catalogue loaded from YAML.

The file holds a top-level ``backends:`` list; list order is dispatch
priority order.  Example::

    backends:
      - name: primary
        kind: http
        url: https://mail.example.com/v1/send
        timeout: 10
      - name: fallback
        kind: simulated
        failure_rate: 0.1
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from relay.backends.base import Backend
from relay.backends.http import HttpBackend
from relay.backends.simulated import SimulatedBackend


def _build_simulated(item: dict[str, Any], path: Path) -> Backend:
    return SimulatedBackend(
        name=item["name"],
        failure_rate=float(item.get("failure_rate", 0.2)),
        latency=float(item.get("latency", 1.0)),
        jitter=float(item.get("jitter", 0.5)),
    )


def _build_http(item: dict[str, Any], path: Path) -> Backend:
    url = item.get("url")
    if not url:
        raise ValueError(f"Backend '{item['name']}' missing 'url' in {path}")
    return HttpBackend(
        name=item["name"],
        url=url,
        timeout=float(item.get("timeout", 30.0)),
        id_field=item.get("id_field", "id"),
        headers=item.get("headers") or {},
    )


_BUILDERS: dict[str, Callable[[dict[str, Any], Path], Backend]] = {
    "simulated": _build_simulated,
    "http": _build_http,
}


def load_backends(config_path: str | Path) -> list[Backend]:
    """Build backends from *config_path* in priority order.

    Raises:
        FileNotFoundError: If the YAML file does not exist.
        ValueError: If the YAML is invalid, an entry is missing required
                    keys, names an unknown kind, or repeats a name.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Backend config not found: {path}")

    raw = path.read_text(encoding="utf-8")
    try:
        data: Any = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict) or "backends" not in data:
        raise ValueError(f"YAML must contain a top-level 'backends' key in {path}")

    items = data["backends"]
    if not items:
        raise ValueError(f"No backends defined in {path}")

    backends: list[Backend] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict):
            raise ValueError(f"Backend entries must be mappings in {path}")

        name = item.get("name")
        if not name:
            raise ValueError(f"Backend entry missing 'name' in {path}")
        if name in seen:
            raise ValueError(f"Duplicate backend name '{name}' in {path}")

        kind = item.get("kind")
        builder = _BUILDERS.get(kind)
        if builder is None:
            raise ValueError(f"Unknown backend kind '{kind}' for '{name}' in {path}. Valid kinds: {sorted(_BUILDERS)}")

        backends.append(builder(item, path))
        seen.add(name)
    return backends
