"""Pricebook providers -- capability-bearing backends for pull and push."""

from src.app.pricebook.providers.base import Capability, NotSupported, PricebookProvider
from src.app.pricebook.providers.external import ExternalPricebookProvider
from src.app.pricebook.providers.native import NativeProvider

__all__ = [
    "Capability",
    "ExternalPricebookProvider",
    "NativeProvider",
    "NotSupported",
    "PricebookProvider",
]
