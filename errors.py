"""
Typed outcomes for rewards operations.

Rule violations (not enough points, expired voucher, ...) are expected
results the client branches on, so each carries a stable ``code`` and a
human-readable message. The API layer turns them into
``{"ok": false, "error": code, "message": ...}`` responses.
"""


class RewardsError(Exception):
    code = "Error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"ok": False, "error": self.code, "message": self.message}


class NotFound(RewardsError):
    code = "NotFound"
    status_code = 404
    default_message = "Not found"


class TemplateNotFound(NotFound):
    code = "TemplateNotFound"
    default_message = "Voucher template not found"


class TemplateInactive(RewardsError):
    code = "TemplateInactive"
    status_code = 409
    default_message = "Voucher template is not active"


class InsufficientPoints(RewardsError):
    code = "InsufficientPoints"
    status_code = 409
    default_message = "Insufficient points"


class InsufficientBalance(RewardsError):
    code = "InsufficientBalance"
    status_code = 409
    default_message = "Points balance cannot go below zero"


class OutOfStock(RewardsError):
    code = "OutOfStock"
    status_code = 409
    default_message = "Voucher out of stock"


class AlreadyRedeemed(RewardsError):
    code = "AlreadyRedeemed"
    status_code = 409
    default_message = "Voucher already redeemed"


class Expired(RewardsError):
    code = "Expired"
    status_code = 410
    default_message = "Voucher expired"


class DuplicateSubmission(RewardsError):
    code = "DuplicateSubmission"
    status_code = 409
    default_message = "This item was recently scanned. Please wait before scanning again."


class BackendUnavailable(RewardsError):
    code = "BackendUnavailable"
    status_code = 503
    default_message = "Rewards backend is temporarily unavailable"
