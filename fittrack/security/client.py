from starlette.requests import Request

API_PREFIXES = ("/api/", "/internal/")


def get_client_ip(request: Request, trust_proxy: bool = False) -> str:
    """
    Client address used for rate limiting and audit records.

    Proxy headers are only honoured when the app is deployed behind a
    trusted load balancer, otherwise they are trivially spoofed.
    """
    if trust_proxy:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # X-Forwarded-For can contain multiple IPs, take the first
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

    return request.client.host if request.client else "unknown"


def wants_json(request: Request) -> bool:
    if request.url.path.startswith(API_PREFIXES):
        return True
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return True
    if "application/json" in request.headers.get("content-type", ""):
        return True
    accept = request.headers.get("accept", "")
    return "application/json" in accept and "text/html" not in accept
