from urllib.parse import unquote
from fastapi import Path, Request
from excel_data.services.audit_service import ClientInfo


def get_client_info(request: Request) -> ClientInfo:
    """
    Caller address and user agent for the audit log.

    Proxy headers win over the socket address; the IPv6 loopback is reported
    as 127.0.0.1.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.headers.get("X-Real-IP") or (request.client.host if request.client else None)

    if ip == "::1":
        ip = "127.0.0.1"

    return ClientInfo(ip=ip or None, user_agent=request.headers.get("User-Agent"))


def get_file_name(file_name: str = Path(...)) -> str:
    """File-name path segment, percent-decoded (clients may encode it twice)."""
    return unquote(file_name)
