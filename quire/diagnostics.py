"""Provider debug output shared by translators and refinement backends."""

from __future__ import annotations

import json
import sys
from typing import Any


def log_provider_debug(label: str, payload: Any) -> None:
    """Write a labelled payload dump to stderr."""

    try:
        if isinstance(payload, (dict, list)):
            message = json.dumps(payload, ensure_ascii=False, indent=2)
        else:
            message = str(payload)
    except (TypeError, ValueError):
        message = repr(payload)
    print(f"[quire][provider-debug] {label}:\n{message}", file=sys.stderr)


def safe_dump_response(response: Any) -> Any:
    """Best-effort conversion of SDK response objects into JSON-friendly data."""

    for attr in ("model_dump", "model_dump_json"):
        candidate = getattr(response, attr, None)
        if candidate:
            try:
                data = candidate()
            except (TypeError, ValueError):
                continue
            if isinstance(data, str):
                return json.loads(data)
            return data
    return str(response)


class ProviderDebugMixin:
    """Adds ``_log_debug`` gated by the instance's ``debug`` flag."""

    debug: bool = False

    def _log_debug(self, label: str, payload: Any) -> None:
        if not self.debug:
            return
        log_provider_debug(label, payload)
