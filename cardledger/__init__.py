"""Card, transaction, merchant and feed services, stream workers and a payment-session client."""

__version__ = "0.1.0"