"""Schedule cadence signatures and duplicate detection."""

from steward.scheduling.signature import find_duplicate_schedule, schedule_signature_key

__all__ = ["find_duplicate_schedule", "schedule_signature_key"]
