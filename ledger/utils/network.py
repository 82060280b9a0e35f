from django.conf import settings


def client_ip(request) -> str:
    """
    Client address for abuse limiting.

    The socket address is used unless TRUSTED_PROXY_COUNT proxies sit in
    front of the app. Then the X-Forwarded-For hop appended by the
    outermost trusted proxy is used, counted from the right. Hops to the
    left of it are client supplied and are ignored.
    """
    remote_addr = request.META.get("REMOTE_ADDR") or "unknown"
    trusted = getattr(settings, "TRUSTED_PROXY_COUNT", 0)
    if trusted <= 0:
        return remote_addr

    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if len(hops) < trusted:
        return remote_addr
    return hops[-trusted]
