from __future__ import annotations

from typing import List, Optional


class ConfigError(ValueError):
    """Rejected configuration. Raised while loading or validating, never while evaluating."""

    def __init__(self, message: str, conflicts: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.conflicts = list(conflicts or [])


class DownloadClientError(Exception):
    def __init__(self, client_name: str, message: str) -> None:
        super().__init__(f"{client_name}: {message}")
        self.client_name = client_name


class ArrRequestError(Exception):
    def __init__(self, instance_url: str, message: str, status: Optional[int] = None) -> None:
        super().__init__(f"{instance_url}: {message}")
        self.instance_url = instance_url
        self.status = status
