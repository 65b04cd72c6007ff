from forcetrunc.services.truncate.reporter import (
    TruncateResult,
    render_errors,
    render_plan,
    render_summary,
)
from forcetrunc.services.truncate.service import force_truncate

__all__ = [
    "TruncateResult",
    "force_truncate",
    "render_errors",
    "render_plan",
    "render_summary",
]
