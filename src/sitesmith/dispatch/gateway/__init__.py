"""Inference gateway implementations."""

from sitesmith.dispatch.gateway.base import CatalogSource, GatewayOptions, InferenceGateway
from sitesmith.dispatch.gateway.openrouter import OpenRouterGateway
from sitesmith.dispatch.gateway.scripted import ScriptedGateway

__all__ = [
    "CatalogSource",
    "GatewayOptions",
    "InferenceGateway",
    "OpenRouterGateway",
    "ScriptedGateway",
]
