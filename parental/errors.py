GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class ParentalError(Exception):
    """Base class for failures surfaced by the chat pipeline."""


class ProviderError(ParentalError):
    """The completion call failed or returned no usable stream."""


class StoreError(ParentalError):
    """A persistence read or write failed."""


class ValidationError(ParentalError):
    """The request body or turn input is malformed."""
