# Package surface only: run() and lib. lib logs through service.logging_utils.
from . import lib  # so: from modules.group_watch import lib
from .main import run  # so: from modules.group_watch import run

__all__ = ["lib", "run"]
