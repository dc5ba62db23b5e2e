"""Keep customer PII out of INFO-level logs shipped to aggregators."""


def mask_email(email: str | None) -> str:
    """'jane@example.com' -> 'j***@example.com'."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.rsplit("@", 1)
    return f"{local[:1]}***@{domain}"
