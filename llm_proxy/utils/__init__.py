def describe_error(exc: BaseException) -> str:
    """
    Return a non-empty, human readable description of an exception.

    Some httpx errors (e.g. a bare ``ReadTimeout``) stringify to an empty
    string, and callers of the proxy must always see what went wrong.
    """
    try:
        text = str(exc)
    except Exception:
        text = ""
    if not text:
        try:
            text = repr(exc)
        except Exception:
            text = ""
    return text or type(exc).__name__
