"""KYC status lookups used to gate payouts"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from models import CustomerProfile, KycStatus, ProfileKycStatus
from utils.atomic_transactions import atomic_transaction

logger = logging.getLogger(__name__)

PROFILE_STATUS_MAP = {
    ProfileKycStatus.APPROVED.value: KycStatus.APPROVED.value,
    ProfileKycStatus.REJECTED.value: KycStatus.REJECTED.value,
    ProfileKycStatus.PENDING.value: KycStatus.PENDING.value,
    ProfileKycStatus.NOT_STARTED.value: KycStatus.PENDING.value,
}


class KycProvider(ABC):
    """Identity provider consulted on every allocation pass"""

    @abstractmethod
    async def get_kyc_status(self, customer_id: str) -> str:
        """Return APPROVED, PENDING or REJECTED"""


class ProfileKycProvider(KycProvider):
    """Reads KYC status from customer_profiles; never cached"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    async def get_kyc_status(self, customer_id: str) -> str:
        with atomic_transaction(session_factory=self.session_factory) as session:
            profile: Optional[CustomerProfile] = (
                session.query(CustomerProfile)
                .filter(CustomerProfile.customer_id == customer_id)
                .first()
            )
            if profile is None:
                logger.warning(f"⚠️ KYC_PROFILE_MISSING: customer {customer_id} has no profile; treating as PENDING")
                return KycStatus.PENDING.value
            return PROFILE_STATUS_MAP.get(str(profile.kyc_status).lower(), KycStatus.PENDING.value)
