from typing import Optional

from fastapi import Header, HTTPException, Request, status


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> None:
    """
    Jika API_KEY tidak diset → auth dimatikan (dev mode).
    Set API_KEY di environment untuk mengaktifkan proteksi.
    """
    settings = getattr(request.app.state, "settings", None)
    expected = (getattr(settings, "api_key", "") or "").strip()
    if not expected:
        return
    if not x_api_key or x_api_key.strip() != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")


def client_identity(request: Request) -> str:
    """
    Identitas klien untuk rate limiting: X-Client-ID, lalu X-Forwarded-For
    (hop pertama), lalu alamat socket.
    """
    client_id = (request.headers.get("X-Client-ID") or "").strip()
    if client_id:
        return f"client:{client_id}"

    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    if forwarded:
        return f"ip:{forwarded}"

    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"
