"""Action dispatch: typed commands and the dispatcher."""

from licensehub.dispatch.commands import ACTIONS, parse_command
from licensehub.dispatch.dispatcher import Dispatcher

__all__ = ["ACTIONS", "Dispatcher", "parse_command"]
