"""Broker connection and order execution modules."""

from .broker_gateway import BrokerConnection, BrokerEventBus, Subscription
from .paper_broker import PaperBrokerConnection
from .tracker import OrderTicket, OrderTracker, TrackerState

__all__ = [
    "BrokerConnection",
    "BrokerEventBus",
    "OrderTicket",
    "OrderTracker",
    "PaperBrokerConnection",
    "Subscription",
    "TrackerState",
]
