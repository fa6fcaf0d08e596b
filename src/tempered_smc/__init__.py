"""Tempered sequential Monte Carlo with adaptive schedules and blocked MH mutation."""

from .errors import *
from .states import *
from .proposals import *
from .tempering import *
from .resampling import *
from .evaluation import *
from .mh_moves import *
from .runner import (
    bridge_cloud,
    correction,
    initial_draw,
    marginal_data_density,
    run_smc,
    selection,
    smc,
)

__all__ = [name for name in globals() if not name.startswith("_")]
