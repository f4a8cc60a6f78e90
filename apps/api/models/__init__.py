"""Models package."""

from .user import User
from .generation_attempt import GenerationAttempt
from .paid_credit_balance import PaidCreditBalance
from .pending_payment import PendingPayment
from .block_entry import BlockEntry
from .admin_user import AdminUser
