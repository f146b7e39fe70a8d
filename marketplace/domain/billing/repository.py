"""Billing repository - Firestore operations for billing"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from ...config import STORE_READ_TIMEOUT_SECONDS, STORE_WRITE_TIMEOUT_SECONDS
from .errors import ConcurrentUpdate, StoreReadFailure, StoreWriteFailure
from .schemas import Plan, SubscriptionState, UserRecord

logger = logging.getLogger(__name__)

USERS = "users"
PROFESSIONALS = "professionals"
PLANS = "plans"
SUBSCRIPTION_FIELD = "subscriptionStatus"


@dataclass
class SubscriptionSnapshot:
    """A professional document as read before a guarded update"""

    exists: bool
    state: Optional[SubscriptionState] = None
    update_time: Optional[datetime] = None


class SubscriptionRepository:
    """Repository for billing document operations.

    All writes to a professional document are field-path updates so that the
    reconciler and the profile-edit flow never overwrite each other's fields.
    """

    def __init__(
        self,
        db,
        read_timeout: float = STORE_READ_TIMEOUT_SECONDS,
        write_timeout: float = STORE_WRITE_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout

    def _get(self, collection: str, doc_id: str):
        try:
            return self.db.collection(collection).document(doc_id).get(timeout=self.read_timeout)
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"❌ Failed to read {collection}/{doc_id}: {e}")
            raise StoreReadFailure(str(e)) from e

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Get user by ID"""
        snapshot = self._get(USERS, user_id)
        if not snapshot.exists:
            return None
        return UserRecord.model_validate({**(snapshot.to_dict() or {}), "id": user_id})

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        """Get plan by ID"""
        snapshot = self._get(PLANS, plan_id)
        if not snapshot.exists:
            return None
        return Plan.model_validate({**(snapshot.to_dict() or {}), "id": plan_id})

    def list_active_plans(self) -> list[Plan]:
        """Active plans, cheapest first"""
        query = self.db.collection(PLANS).where(filter=FieldFilter("active", "==", True))
        try:
            plans = [
                Plan.model_validate({**(doc.to_dict() or {}), "id": doc.id})
                for doc in query.stream(timeout=self.read_timeout)
            ]
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"❌ Failed to list plans: {e}")
            raise StoreReadFailure(str(e)) from e
        return sorted(plans, key=lambda p: p.price)

    def get_subscription_snapshot(self, user_id: str) -> SubscriptionSnapshot:
        snapshot = self._get(PROFESSIONALS, user_id)
        if not snapshot.exists:
            return SubscriptionSnapshot(exists=False)

        raw = (snapshot.to_dict() or {}).get(SUBSCRIPTION_FIELD)
        state = SubscriptionState.model_validate(raw) if isinstance(raw, dict) else None
        return SubscriptionSnapshot(exists=True, state=state, update_time=snapshot.update_time)

    def get_subscription_state(self, user_id: str) -> Optional[SubscriptionState]:
        """Current subscription state of a professional, None when there is no plan"""
        return self.get_subscription_snapshot(user_id).state

    def patch_subscription_state(
        self,
        user_id: str,
        changes: dict[str, Any],
        last_update_time: Optional[datetime] = None,
    ) -> None:
        """Atomically write subscriptionStatus fields.

        With last_update_time the write only succeeds if the document has not
        changed since it was read (ConcurrentUpdate otherwise).
        """
        field_updates = {f"{SUBSCRIPTION_FIELD}.{key}": value for key, value in changes.items()}
        doc_ref = self.db.collection(PROFESSIONALS).document(user_id)
        kwargs: dict[str, Any] = {"timeout": self.write_timeout}
        if last_update_time is not None:
            kwargs["option"] = self.db.write_option(last_update_time=last_update_time)

        try:
            doc_ref.update(field_updates, **kwargs)
        except google_exceptions.FailedPrecondition as e:
            logger.info(f"🔄 subscriptionStatus of {user_id} changed since read")
            raise ConcurrentUpdate(str(e)) from e
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"❌ Failed to update subscriptionStatus of {user_id}: {e}")
            raise StoreWriteFailure(str(e)) from e

    def create_subscription_state(self, user_id: str, changes: dict[str, Any]) -> None:
        """First write for a professional with no document yet.

        Fails with ConcurrentUpdate if the document was created since it was read.
        """
        doc_ref = self.db.collection(PROFESSIONALS).document(user_id)
        try:
            doc_ref.create({SUBSCRIPTION_FIELD: changes}, timeout=self.write_timeout)
        except google_exceptions.AlreadyExists as e:
            logger.info(f"🔄 professionals/{user_id} was created since read")
            raise ConcurrentUpdate(str(e)) from e
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"❌ Failed to create professionals/{user_id}: {e}")
            raise StoreWriteFailure(str(e)) from e

    def find_user_id_by_customer_id(self, customer_id: str) -> Optional[str]:
        """Get professional ID by provider customer ID"""
        query = (
            self.db.collection(PROFESSIONALS)
            .where(filter=FieldFilter(f"{SUBSCRIPTION_FIELD}.externalCustomerId", "==", customer_id))
            .limit(1)
        )
        try:
            for doc in query.stream(timeout=self.read_timeout):
                return doc.id
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"❌ Failed to look up customer {customer_id}: {e}")
            raise StoreReadFailure(str(e)) from e
        return None

    def update_profile_fields(self, user_id: str, fields: dict[str, Any]) -> None:
        """Write non-entitlement profile fields of a professional"""
        if any(key.split(".", 1)[0] == SUBSCRIPTION_FIELD for key in fields):
            raise ValueError("subscriptionStatus is written by the billing reconciler only")
        try:
            self.db.collection(PROFESSIONALS).document(user_id).update(
                fields, timeout=self.write_timeout
            )
        except google_exceptions.GoogleAPIError as e:
            logger.error(f"❌ Failed to update profile of {user_id}: {e}")
            raise StoreWriteFailure(str(e)) from e
