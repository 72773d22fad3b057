from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests


@dataclass
class HttpConfig:
    user_agent: str = "query-export/0.1"
    connect_timeout: float = 10.0
    read_timeout: float = 120.0


class HttpClient:
    """Thin session wrapper. One request per call; failures surface to the caller."""

    def __init__(self, cfg: HttpConfig, session: requests.Session | None = None):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": cfg.user_agent})

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        timeout = kwargs.pop("timeout", (self.cfg.connect_timeout, self.cfg.read_timeout))
        return self.session.request(method, url, timeout=timeout, **kwargs)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
