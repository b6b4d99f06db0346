class BloodLinkError(Exception):
    """Base for errors a caller can see; the HTTP layer renders status_code + message."""
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BloodLinkError):
    status_code = 400
    default_message = "Invalid input"


class Unauthorized(BloodLinkError):
    status_code = 401
    default_message = "Login required"


class Forbidden(BloodLinkError):
    status_code = 403
    default_message = "Access denied"


class NotFound(BloodLinkError):
    status_code = 404
    default_message = "Not found"


class PreconditionFailed(BloodLinkError):
    # entity exists but is not in the state the transition needs
    status_code = 409
    default_message = "Precondition failed"


def text_value(value, field, required=False):
    """Stripped string for a free-text input field; None when optional and blank."""
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if required and not value:
        raise ValidationError(f"{field} is required")
    return value or None
