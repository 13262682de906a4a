# app/api/dependencies/runtime.py
from app.services.runtime import AttendanceRuntime, get_runtime


async def get_attendance_runtime() -> AttendanceRuntime:
    """
    Dependency giving routes access to the shared ingestor, engine and
    aggregator. Tests override it with a runtime bound to a throwaway DB.
    """
    return get_runtime()
