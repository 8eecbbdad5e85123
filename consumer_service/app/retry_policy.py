import enum

DEFAULT_MAX_RETRIES = 3

# Processing is never gated up front; the controller is consulted only after
# a delivery has failed.
PROCESS_ALLOWED = True


class RetryDecision(str, enum.Enum):
    RETRY = "retry"
    GIVE_UP = "give_up"


def decide(retry_count, max_retries=DEFAULT_MAX_RETRIES):
    """
    Classify a failed delivery.

    GIVE_UP once retry_count has reached max_retries, RETRY otherwise.
    """
    if retry_count < 0 or max_retries < 0:
        raise ValueError("retry_count and max_retries must be non-negative")
    if retry_count >= max_retries:
        return RetryDecision.GIVE_UP
    return RetryDecision.RETRY
