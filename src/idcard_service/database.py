"""
MongoDB persistence for ID-card records.

This module wraps one pymongo client and exposes the collection operations the
API needs: full-collection reads, the accept-and-archive write, and the admin
allow-list lookup. It also tracks whether the connection is usable so the HTTP
layer can refuse work while the database is still connecting.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from pymongo import ASCENDING, MongoClient, monitoring
from pymongo.client_session import ClientSession
from pymongo.errors import OperationFailure, PyMongoError

from .configuration import DEFAULT_DATABASE_NAME
from .models import AcceptedIdCard, AcceptIdCardRequest

logger = logging.getLogger(__name__)

PRINT_REQUESTS = "printids"
ACCEPTED_ID_CARDS = "acceptedidcards"
ACCEPTANCE_HISTORY = "acchistoryids"
ADMIN_IDS = "adminids"

ADMIN_ID_INDEX = "adminid_1"

# IndexOptionsConflict, IndexKeySpecsConflict
_INDEX_CONFLICT_CODES = {85, 86}


class DuplicateAcceptError(Exception):
    """Raised when a registerNumber already has an accepted ID card."""

    def __init__(self, register_number: str):
        self.register_number = register_number
        super().__init__(f"ID card already accepted for registerNumber {register_number}")


class _TopologyListener(monitoring.TopologyListener):
    """
    Keeps the store's readiness flag in step with the driver's view of the deployment.

    The store counts as connected while any member can take writes, so one
    unreachable replica-set secondary does not close the gate.
    """

    def __init__(self) -> None:
        self.store: Optional["IdCardStore"] = None

    def opened(self, event: monitoring.TopologyOpenedEvent) -> None:
        pass

    def description_changed(self, event: monitoring.TopologyDescriptionChangedEvent) -> None:
        if self.store is None or not self.store.opened:
            return
        self.store._set_connected(event.new_description.has_writable_server())

    def closed(self, event: monitoring.TopologyClosedEvent) -> None:
        if self.store is not None:
            self.store._set_connected(False)


class IdCardStore:
    """
    Collection-scoped access to the student ID-card database.

    The store starts disconnected. ``connect()`` pings the server, marks the
    store connected and ensures the admin-ID index. Handlers should check
    ``is_connected`` before touching the collections.
    """

    def __init__(
        self,
        client: MongoClient,
        database_name: Optional[str] = None,
        use_transactions: bool = False,
        reject_duplicate_accepts: bool = False,
        reconnect_interval: float = 5.0,
    ):
        self.client = client
        if database_name:
            self.db = client[database_name]
        else:
            self.db = client.get_default_database(default=DEFAULT_DATABASE_NAME)
        self.database_name = self.db.name
        self.use_transactions = use_transactions
        self.reject_duplicate_accepts = reject_duplicate_accepts
        self.reconnect_interval = reconnect_interval
        self.opened = False
        self._connected = False
        self._lock = threading.RLock()
        self._closing = threading.Event()

    @classmethod
    def from_config(cls, config: Any, client_factory: Callable[..., MongoClient] = MongoClient) -> "IdCardStore":
        """
        Build a store from the service configuration.

        The client is created lazily by pymongo: no network I/O happens until
        ``connect()`` or the first operation.
        """
        listener = _TopologyListener()
        client = client_factory(
            config.mongo_uri,
            serverSelectionTimeoutMS=config.server_selection_timeout_ms,
            socketTimeoutMS=config.socket_timeout_ms,
            maxPoolSize=config.max_pool_size,
            tz_aware=True,
            connect=False,
            event_listeners=[listener],
        )
        store = cls(
            client,
            database_name=config.database_name,
            use_transactions=config.use_transactions,
            reject_duplicate_accepts=config.reject_duplicate_accepts,
        )
        listener.store = store
        return store

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _set_connected(self, value: bool) -> None:
        with self._lock:
            if value and not self._connected:
                logger.info(f"Connected to {self.database_name} database")
            elif not value and self._connected:
                logger.warning(f"Lost connection to {self.database_name} database")
            self._connected = value

    def connect(self) -> bool:
        """
        Ping the server and, on success, mark the store connected and ensure indexes.

        Returns:
            True if the database answered the ping, False otherwise
        """
        try:
            self.client.admin.command("ping")
        except PyMongoError as exc:
            logger.error(f"Error connecting to {self.database_name} database: {exc}")
            return False
        with self._lock:
            if self._closing.is_set():
                return False
            self.opened = True
            self._set_connected(True)
        self.ensure_indexes()
        return True

    def open(self) -> None:
        """Call ``connect()`` until it succeeds or ``close()`` is called."""
        while not self._closing.is_set():
            if self.connect():
                return
            self._closing.wait(self.reconnect_interval)

    def close(self) -> None:
        with self._lock:
            self._closing.set()
            self.opened = False
            self._set_connected(False)
        self.client.close()
        logger.info(f"Closed connection to {self.database_name} database")

    def ensure_indexes(self) -> None:
        """Create the unique admin-ID index; failures are logged, never raised."""
        try:
            self.db[ADMIN_IDS].create_index([("adminid", ASCENDING)], unique=True, name=ADMIN_ID_INDEX)
            logger.info(f"Indexes ensured for {ADMIN_IDS}")
        except OperationFailure as exc:
            if exc.code in _INDEX_CONFLICT_CODES:
                logger.info("Index already exists with different options; keeping existing.")
            else:
                logger.error(f"Failed ensuring indexes: {exc}")
        except PyMongoError as exc:
            logger.error(f"Failed ensuring indexes: {exc}")

    # Reads return the stored documents untouched; see models.encode_document
    def list_print_requests(self) -> List[Dict[str, Any]]:
        return list(self.db[PRINT_REQUESTS].find({}))

    def list_acceptance_history(self) -> List[Dict[str, Any]]:
        return list(self.db[ACCEPTANCE_HISTORY].find({}))

    def list_accepted_cards(self) -> List[Dict[str, Any]]:
        return list(self.db[ACCEPTED_ID_CARDS].find({}))

    def accept_request(self, request: AcceptIdCardRequest) -> Dict[str, Any]:
        """
        Store an accepted ID card and remove its pending print request.

        The card is inserted before the print request is deleted, so a failed
        delete leaves a duplicate rather than losing the record. With
        ``use_transactions`` both steps run in one transaction.

        Raises:
            DuplicateAcceptError: registerNumber already accepted (when the guard is on)
            PyMongoError: any storage failure, from either step
        """
        card = request.to_card()
        if not self.use_transactions:
            return self._accept(card, None)

        with self.client.start_session() as session:
            return session.with_transaction(lambda s: self._accept(card, s))

    def _accept(self, card: AcceptedIdCard, session: Optional[ClientSession]) -> Dict[str, Any]:
        register_number = card.registerNumber
        session_kwargs = {"session": session} if session is not None else {}

        if self.reject_duplicate_accepts and register_number is not None:
            existing = self.db[ACCEPTED_ID_CARDS].find_one(
                {"registerNumber": register_number}, {"_id": 1}, **session_kwargs
            )
            if existing is not None:
                raise DuplicateAcceptError(register_number)

        saved = card.to_document()
        result = self.db[ACCEPTED_ID_CARDS].insert_one(saved, **session_kwargs)
        saved["_id"] = result.inserted_id

        if register_number is None:
            logger.warning("Accepted ID card without registerNumber; no print request removed")
            return saved

        deleted = self.db[PRINT_REQUESTS].delete_many({"registerNumber": register_number}, **session_kwargs)
        logger.info(f"Accepted ID card for {register_number}; removed {deleted.deleted_count} print request(s)")
        return saved

    def is_admin(self, admin_id: Optional[str]) -> bool:
        """Exact, case-sensitive allow-list check."""
        if admin_id is None:
            return False
        return self.db[ADMIN_IDS].find_one({"adminid": admin_id}, {"_id": 1}) is not None
