class StoreError(Exception):
    pass


class GatewayError(StoreError):
    """Transport, auth or payload-shape failure talking to a gateway.

    Never implies anything about the order: callers log it and leave the
    order untouched so the next sweep can retry.
    """

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class OrderNotFound(StoreError):
    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class ProductUnavailable(StoreError):
    """Product missing, inactive or out of stock at purchase time."""

    def __init__(self, product_id: int, reason: str):
        super().__init__(f"product {product_id}: {reason}")
        self.product_id = product_id
        self.reason = reason


class InvalidTransition(StoreError):
    def __init__(self, order_id: str, current: str, target: str):
        super().__init__(
            f"order {order_id}: transition {current} -> {target} not allowed"
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class WebhookRejected(StoreError):
    pass


class MalformedWebhook(StoreError):
    pass
