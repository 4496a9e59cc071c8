"""Atomic transaction and row-locking utilities for ledger and order mutations"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Generator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# One in-process writer lock per asset; row locks cover other processes
_asset_locks: Dict[str, threading.RLock] = {}
_asset_locks_guard = threading.Lock()


def get_asset_lock(asset_type: str) -> threading.RLock:
    """Return the process-wide writer lock for an asset"""
    with _asset_locks_guard:
        lock = _asset_locks.get(asset_type)
        if lock is None:
            lock = threading.RLock()
            _asset_locks[asset_type] = lock
        return lock


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Without a session a new one is opened from session_factory (default
    SessionLocal), committed on success and closed. With a provided session
    the outermost block commits; nested blocks defer to it.
    """
    if session is None:
        if session_factory is None:
            from database import SessionLocal
            session_factory = SessionLocal
        new_session = session_factory()
        logger.debug("Created new sync session for atomic transaction")
        try:
            yield new_session
            new_session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except Exception as e:
            new_session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            new_session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")
        else:
            session.flush()

    except Exception as e:
        if transaction_depth == 0:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def locked_order(session: Session, order_id: str):
    """Load a fulfillment order with SELECT ... FOR UPDATE"""
    from models import FulfillmentOrder

    try:
        order = (
            session.query(FulfillmentOrder)
            .filter(FulfillmentOrder.order_id == order_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
    except SQLAlchemyError as e:
        logger.error(f"Database error locking order {order_id}: {e}")
        raise
    if order is not None:
        logger.debug(f"🔒 LOCKED: Order {order_id} locked for update")
    return order


def locked_asset_lots(session: Session, asset_type: str, eligible_before=None) -> List:
    """Lock an asset's lots with available inventory, FIFO by received_at"""
    from models import InventoryLot

    query = session.query(InventoryLot).filter(
        InventoryLot.asset_type == asset_type,
        InventoryLot.amount_available > 0,
    )
    if eligible_before is not None:
        query = query.filter(InventoryLot.eligible_at <= eligible_before)
    try:
        return (
            query.order_by(InventoryLot.received_at.asc(), InventoryLot.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Database error locking {asset_type} lots: {e}")
        raise


def locked_setting(session: Session, setting_key: str):
    """Row-lock a system_settings row; used as a cross-process guard"""
    from models import SystemSetting

    try:
        return (
            session.query(SystemSetting)
            .filter(SystemSetting.setting_key == setting_key)
            .with_for_update()
            .first()
        )
    except SQLAlchemyError as e:
        logger.error(f"Database error locking setting {setting_key}: {e}")
        raise
