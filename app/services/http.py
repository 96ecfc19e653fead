from typing import Any, Dict, Optional

import requests


class NotFound(Exception):
    """Resource eksternal menjawab 404 / tidak ada hasil (bukan kegagalan transport)."""


class ApiClient:
    """
    Wrapper tipis di atas requests.Session: timeout per kelas panggilan,
    raise_for_status, dan 404 dipisahkan sebagai NotFound.
    """

    def __init__(self, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self.session.get(
            url,
            params=params,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )
        if response.status_code == 404:
            raise NotFound(url)
        response.raise_for_status()
        data = response.json()
        return data if isinstance(data, dict) else {}


def is_transient(error: Exception) -> bool:
    """NotFound dan 4xx (selain 429) tidak perlu di-retry; timeout, koneksi, 5xx boleh."""
    if isinstance(error, NotFound):
        return False
    if isinstance(error, requests.HTTPError) and error.response is not None:
        code = error.response.status_code
        return code >= 500 or code == 429
    return True
