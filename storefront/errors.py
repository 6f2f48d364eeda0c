class StorefrontError(Exception):
    """Base class for errors raised by the checkout and webhook flows."""


class InvalidInput(StorefrontError):
    """The cart or buyer details were rejected before anything was written."""


class CheckoutFailed(StorefrontError):
    """A store or gateway call failed while creating a checkout session.

    Customer and order rows written before the failure are left in place.
    """


class SignatureInvalid(StorefrontError):
    """The webhook payload did not verify against the signing secret."""


class StoreUnavailable(StorefrontError):
    """The database could not be reached or the pool timed out."""


class GatewayError(StorefrontError):
    """Stripe rejected a request or could not be reached."""
