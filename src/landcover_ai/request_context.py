from __future__ import annotations

import contextvars

# Correlation id of the request being served; empty outside a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
