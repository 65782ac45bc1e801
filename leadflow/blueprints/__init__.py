from flask import request


def request_actor() -> str:
    """Actor recorded on audit rows; callers identify themselves with X-User."""
    return (request.headers.get("X-User") or "system").strip()[:150] or "system"
