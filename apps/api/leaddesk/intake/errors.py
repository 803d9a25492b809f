from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    def __init__(
        self,
        code: str,
        status_code: int,
        message: str,
        details: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(code)
        self.code = code
        self.status_code = status_code
        self.message = message
        self.details = details
        self.headers = headers or {}
