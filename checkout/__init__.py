"""
                Mobile Money Checkout

Checkout backend for a food-delivery app: drives mobile-money payment
confirmation against the Shwary gateway and records the resulting order.
"""

__version__ = "1.0.0"
