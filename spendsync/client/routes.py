from __future__ import annotations

from typing import Any, Mapping
from urllib.parse import urlencode

REGISTER = "/api/register"
LOGIN = "/api/login"
LOGOUT = "/api/logout"
CURRENT_USER = "/api/user"

EXPENSES = "/api/expenses"
EXPENSE = "/api/expenses/:id"
STATS = "/api/stats"
STATS_DAILY = "/api/stats/daily"

RECURRING = "/api/recurring"
RECURRING_ITEM = "/api/recurring/:id"
RECURRING_PROCESS = "/api/recurring/process"

INVOICES = "/api/invoices"
INVOICES_UPLOAD = "/api/invoices/upload"
INVOICE_PROCESS = "/api/invoices/:id/process"

SETTINGS = "/api/settings"


def build_url(path: str, params: Mapping[str, Any] | None = None) -> str:
    """Fill `:name` placeholders from `params`; leftover params are ignored."""
    url = path
    for key, value in (params or {}).items():
        url = url.replace(f":{key}", str(value))
    return url


def with_query(path: str, params: Mapping[str, Any] | None = None) -> str:
    cleaned = {k: v for k, v in (params or {}).items() if v is not None}
    if not cleaned:
        return path
    return f"{path}?{urlencode(cleaned)}"
