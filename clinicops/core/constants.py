"""Application constants."""

# Default business calendar when a clinic has no configured schedule
BUSINESS_HOURS_START = 8  # 8:00 AM
BUSINESS_HOURS_END = 18  # 6:00 PM (18:00)

# Refill scheduling
VIAL_TO_INTERVAL_DAYS = {1: 30, 3: 90, 6: 180}
DEFAULT_REFILL_INTERVAL_DAYS = 30
DAYS_PER_MONTH = 30

# Commission fraud windows
FRAUD_VELOCITY_WINDOW_DAYS = 30
FRAUD_DUPLICATE_IP_WINDOW_DAYS = 30
FRAUD_REFUND_WINDOW_DAYS = 90
