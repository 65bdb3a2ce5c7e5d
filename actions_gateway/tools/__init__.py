"""
Tool handlers, keyed by manifest tool name.

Manifest entries without a handler here are still routed and validated;
calling them answers 501.
"""
from __future__ import annotations

from typing import Dict

from ..registry import Handler
from . import crm, meta

DEFAULT_HANDLERS: Dict[str, Handler] = {
    "meta.health": meta.health,
    "crm.lookup_customer": crm.lookup_customer,
    "crm.create_case": crm.create_case,
    "crm.add_note": crm.add_note,
    "crm.update_case": crm.update_case,
    "crm.escalate_case": crm.escalate_case,
}
