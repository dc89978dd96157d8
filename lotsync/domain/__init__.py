"""Domain layer for lotsync.

Pure models and rules that do not concern infrastructure or interface
details: the sync run checkpoint, vehicle records and the completion/stall
policies.
"""

from . import models, policies

__all__ = ["models", "policies"]
