"""Product image and photoshoot generation for storefront exports."""

__version__ = "0.1.0"
