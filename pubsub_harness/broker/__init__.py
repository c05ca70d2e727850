"""Embedded broker controller and topic naming."""

from .controller import BrokerController
from .topics import topic_name


__all__ = ["BrokerController", "topic_name"]
