"""
Error taxonomy shared by the engines.

Handlers in main.py turn any ShopError into a JSON response carrying its
status_code; everything else becomes a 500.
"""


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ShopError):
    status_code = 404


class ItemNotFound(NotFound):
    pass


class OrderNotFound(NotFound):
    pass


class ValidationError(ShopError):
    status_code = 400


class InvalidAction(ValidationError):
    pass


class InvalidStatus(ValidationError):
    pass


class Unauthorized(ShopError):
    status_code = 401


class Forbidden(ShopError):
    status_code = 403


class InsufficientStock(ShopError):
    status_code = 400


class CouponNotApplicable(ShopError):
    status_code = 400


class InvalidState(ShopError):
    status_code = 400


class InvalidStatusTransition(InvalidState):
    pass
