"""Domain errors. Each carries the HTTP status it is rendered with."""


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class EmptyCartError(StoreError):
    def __init__(self):
        super().__init__("Cart is empty")


class ProductNotFoundError(StoreError):
    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class InsufficientStockError(StoreError):
    def __init__(self, product_name: str, color, available: int, requested: int):
        where = f" in color {color}" if color else ""
        super().__init__(
            f"Insufficient stock for {product_name}{where}: available {available}, requested {requested}"
        )
        self.product_name = product_name
        self.color = color
        self.available = available
        self.requested = requested


class CheckoutFailedError(StoreError):
    status_code = 500

    def __init__(self):
        super().__init__("Failed to create checkout session. Please try again.")


class OrderNotFoundError(StoreError):
    status_code = 404

    def __init__(self, key: str):
        super().__init__(f"Order not found: {key}")


class InvalidStatusTransitionError(StoreError):
    status_code = 409


class WebhookVerificationError(StoreError):
    def __init__(self, reason: str):
        super().__init__(f"Webhook signature verification failed: {reason}")


class PaymentStatusUnavailableError(StoreError):
    status_code = 503

    def __init__(self, session_id: str):
        super().__init__(f"Payment status for session {session_id} is unavailable, try again later")


class UserNotFoundError(StoreError):
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")


class DuplicateUserError(StoreError):
    status_code = 409

    def __init__(self, email: str):
        super().__init__(f"A user with email {email} already exists")


class ProtectedUserError(StoreError):
    status_code = 403


class PaymentProviderError(StoreError):
    status_code = 502

    def __init__(self, session_id: str):
        super().__init__(f"Payment provider rejected the status request for session {session_id}")
