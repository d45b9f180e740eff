"""Database models — re-exports every model.

Import from here:  from calltrack.models import CallLog, TrackingNumber, ...
Or from submodules: from calltrack.models.calls import CallLog
"""

from .base import Base  # noqa: F401

# Tenants (owned by collaborating modules)
from .tenant import Business, MarketingSource  # noqa: F401

# Tracking numbers & routes
from .numbers import NumberRoute, TrackingNumber  # noqa: F401

# Calls & recording processing
from .calls import CallLog, RecordingJob  # noqa: F401

# Hourly rollups
from .rollups import CallDepartmentHourlyKpi, CallVolumeHourly  # noqa: F401
