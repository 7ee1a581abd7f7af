from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure
import urllib.parse
import threading
import asyncio
import copy
import re
import weakref
from typing import Optional, List, Dict, Any, Tuple

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Exceptions
from exceptions.campaign_exception import StoreException

"""
Key-value persistence adapters.

Both adapters expose the same surface: get / set / delete / scan_by_prefix over
opaque dict records, plus get_versioned / compare_and_set / compare_and_delete for
optimistic updates.
A version of 0 means the key is absent, so compare_and_set(..., 0) inserts only
if nobody else has written the key.
"""
class MongoKVStore:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils, collection_name: str = "kv_store"):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo credentials
        self.username = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_USERNAME"))
        self.password = urllib.parse.quote_plus(self.environment_utils.get_env_variable("MONGO_PASSWORD"))
        self.auth_source = self.environment_utils.get_env_variable("MONGO_AUTH_SOURCE")
        self.host = self.environment_utils.get_env_variable("MONGO_HOST")
        self.port = int(self.environment_utils.get_env_variable("MONGO_PORT"))
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")
        self.collection_name = collection_name

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # One client per event loop, created lazily
        self._clients = {}  # {loop_id: {'client', 'collection', 'loop'}}
        self._client_lock = threading.Lock()

    def _connection_uri(self) -> str:
        if self.username and self.password:
            return f"mongodb://{self.username}:{self.password}@{self.host}:{self.port}/?authSource={self.auth_source}"
        return f"mongodb://{self.host}:{self.port}/"

    def _get_collection_for_current_loop(self):
        """
        Thread-safe lookup of the collection bound to the running event loop.
        Motor clients cannot be shared across loops.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Store methods must be called from an async context.")

        loop_id = id(loop)
        if loop_id in self._clients:
            return self._clients[loop_id]['collection']

        with self._client_lock:
            # Another thread may have created it while we waited
            if loop_id in self._clients:
                return self._clients[loop_id]['collection']

            client = AsyncIOMotorClient(
                self._connection_uri(),
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            collection = client[self.db_name][self.collection_name]
            self._clients[loop_id] = {
                'client': client,
                'collection': collection,
                'loop': weakref.ref(loop)
            }

            self.log_util.info(
                service_name="MongoKVStore",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )
            return collection

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="MongoKVStore",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )
            self._clients.clear()
            self.log_util.info(service_name="MongoKVStore", message="All MongoDB clients closed")

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Log a failed store operation and re-raise it as StoreException.
        """
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="MongoKVStore",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise StoreException(message=f"Database connection error: {str(error)}", status_code=503) from error
        self.log_util.error(
            service_name="MongoKVStore",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise StoreException(message=f"Database error: {str(error)}", status_code=500) from error

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        record, _ = await self.get_versioned(key)
        return record

    async def get_versioned(self, key: str) -> Tuple[Optional[Dict[str, Any]], int]:
        collection = self._get_collection_for_current_loop()
        try:
            document = await collection.find_one({"_id": key})
        except Exception as e:
            self._handle_db_operation("get", e)
        if document is None:
            return None, 0
        return document.get("value"), int(document.get("version", 1))

    async def set(self, key: str, record: Any) -> None:
        collection = self._get_collection_for_current_loop()
        try:
            await collection.update_one(
                {"_id": key},
                {"$set": {"value": record}, "$inc": {"version": 1}},
                upsert=True
            )
        except Exception as e:
            self._handle_db_operation("set", e)

    async def compare_and_set(self, key: str, record: Any, expected_version: int) -> bool:
        collection = self._get_collection_for_current_loop()
        try:
            if expected_version == 0:
                try:
                    await collection.insert_one({"_id": key, "value": record, "version": 1})
                    return True
                except DuplicateKeyError:
                    return False
            result = await collection.update_one(
                {"_id": key, "version": expected_version},
                {"$set": {"value": record, "version": expected_version + 1}}
            )
            return result.matched_count == 1
        except Exception as e:
            self._handle_db_operation("compare_and_set", e)

    async def delete(self, key: str) -> None:
        collection = self._get_collection_for_current_loop()
        try:
            await collection.delete_one({"_id": key})
        except Exception as e:
            self._handle_db_operation("delete", e)

    async def compare_and_delete(self, key: str, expected_version: int) -> bool:
        collection = self._get_collection_for_current_loop()
        try:
            result = await collection.delete_one({"_id": key, "version": expected_version})
            return result.deleted_count == 1
        except Exception as e:
            self._handle_db_operation("compare_and_delete", e)

    async def scan_by_prefix(self, prefix: str) -> List[Dict[str, Any]]:
        collection = self._get_collection_for_current_loop()
        try:
            cursor = collection.find({"_id": {"$regex": f"^{re.escape(prefix)}"}}).sort("_id", 1)
            records = []
            async for document in cursor:
                records.append(document.get("value"))
            return records
        except Exception as e:
            self._handle_db_operation("scan_by_prefix", e)


class InMemoryKVStore:
    """
    Process-local store with the same surface as MongoKVStore.
    Records are deep-copied on the way in and out so callers never share state.
    """
    def __init__(self, log_util: Optional[LogUtil] = None):
        self.log_util = log_util
        self._data: Dict[str, Tuple[Any, int]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        record, _ = await self.get_versioned(key)
        return record

    async def get_versioned(self, key: str) -> Tuple[Optional[Dict[str, Any]], int]:
        async with self._lock:
            if key not in self._data:
                return None, 0
            record, version = self._data[key]
            return copy.deepcopy(record), version

    async def set(self, key: str, record: Any) -> None:
        async with self._lock:
            _, version = self._data.get(key, (None, 0))
            self._data[key] = (copy.deepcopy(record), version + 1)

    async def compare_and_set(self, key: str, record: Any, expected_version: int) -> bool:
        async with self._lock:
            _, version = self._data.get(key, (None, 0))
            if version != expected_version:
                return False
            self._data[key] = (copy.deepcopy(record), version + 1)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def compare_and_delete(self, key: str, expected_version: int) -> bool:
        async with self._lock:
            _, version = self._data.get(key, (None, 0))
            if version == 0 or version != expected_version:
                return False
            del self._data[key]
            return True

    async def scan_by_prefix(self, prefix: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return [
                copy.deepcopy(self._data[key][0])
                for key in sorted(self._data)
                if key.startswith(prefix)
            ]

    def close(self):
        self._data.clear()
