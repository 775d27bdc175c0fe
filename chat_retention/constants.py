"""Constants for GDPR retention policies."""

# Retention period limits (in days), mirrored by the gdpr_settings CHECK constraint
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 3650
DEFAULT_RETENTION_DAYS = 90

REDACTION_SENTINEL = "[DELETED FOR GDPR COMPLIANCE]"

# Preview sample size
PREVIEW_SAMPLE_LIMIT = 100

# Daily cleanup time (local wall clock)
DEFAULT_CLEANUP_HOUR = 2
DEFAULT_CLEANUP_MINUTE = 0


def validate_retention_days(days: int) -> int:
    """
    Validate retention period is within allowed range.

    Args:
        days: Number of days to retain conversation content

    Returns:
        Validated retention days

    Raises:
        ValueError: If days is not an integer in [MIN_RETENTION_DAYS, MAX_RETENTION_DAYS]
    """
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValueError("retention_days must be an integer")
    if days < MIN_RETENTION_DAYS or days > MAX_RETENTION_DAYS:
        raise ValueError(
            f"retention_days must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS} days"
        )
    return days
