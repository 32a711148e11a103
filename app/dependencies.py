"""Shared collaborators held on ``app.state`` and handed to routes."""
from fastapi import Request

from app.services.distance import DistanceProvider
from app.services.payment import PaymentGateway
from app.services.pricing import PricingEngine


def get_pricing_engine(request: Request) -> PricingEngine:
    return request.app.state.pricing_engine


def get_distance_provider(request: Request) -> DistanceProvider:
    return request.app.state.distance_provider


def get_payment_gateway(request: Request) -> PaymentGateway:
    return request.app.state.payment_gateway
