"""Low-balance notifications.
Email delivery belongs to a hosted provider; the default notifier records the alert in the log,
which is what the delivery integration tails.
"""

from common.ids import UserId
from common.utils.utils import get_logger

logger = get_logger()


class LowBalanceNotifier:
    async def notify(self, user_id: UserId, threshold: int, balance: int) -> None:
        logger.warning("Credit balance dropped below threshold", user_id=user_id, threshold=threshold, balance=balance)
