from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

from azure.core import MatchConditions
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.cosmos import ContainerProxy, CosmosClient, exceptions
from azure.identity import DefaultAzureCredential

from gymledger.configuration.config import Config
from gymledger.services.svc_errors import NotFound, StaleWrite, StoreUnavailable

# Responses that mean "outcome unknown, try again later" rather than a rejection
UNAVAILABLE_STATUS_CODES = {408, 429, 449, 500, 502, 503, 504}


class DocumentExists(Exception):
    """A create collided with an existing document id."""

    def __init__(self, item_id: str):
        super().__init__(f"Document {item_id} already exists")
        self.item_id = item_id


@lru_cache(maxsize=1)
def get_database():
    """Create the Cosmos client on first use and return the database proxy."""
    credential = Config.COSMOSDB_KEY or DefaultAzureCredential()
    client = CosmosClient(
        url=Config.COSMOSDB_ENDPOINT,
        credential=credential,
        connection_timeout=Config.STORE_TIMEOUT_SECONDS,
        retry_total=Config.STORE_RETRY_TOTAL
    )
    return client.get_database_client(Config.COSMOSDB_DATABASE_NAME)


def get_container(container_key: str) -> ContainerProxy:
    """
    Dependency that provides the CosmosDB container client
    Args:
        container_key (str): Key of the container to get (members, bookings, etc.)
    Returns:
        Container client for the specified container
    """
    if container_key not in Config.COSMOSDB_CONTAINER_NAME:
        raise ValueError(f"Container {container_key} not found")
    return get_database().get_container_client(Config.COSMOSDB_CONTAINER_NAME[container_key])


@contextmanager
def store_operation(operation: str):
    """Translate transport failures and throttling into StoreUnavailable."""
    try:
        yield
    except exceptions.CosmosHttpResponseError as e:
        if e.status_code in UNAVAILABLE_STATUS_CODES:
            raise StoreUnavailable(operation, f"status {e.status_code}") from e
        raise
    except (ServiceRequestError, ServiceResponseError) as e:
        raise StoreUnavailable(operation, type(e).__name__) from e


def _name(container: ContainerProxy) -> str:
    return getattr(container, "id", "container")


def read_document(container: ContainerProxy, item_id: str) -> Optional[Dict[str, Any]]:
    with store_operation(f"read {_name(container)}"):
        try:
            return container.read_item(item=item_id, partition_key=item_id)
        except exceptions.CosmosResourceNotFoundError:
            return None


def create_document(container: ContainerProxy, body: Dict[str, Any]) -> Dict[str, Any]:
    with store_operation(f"create {_name(container)}"):
        try:
            return container.create_item(body=body)
        except exceptions.CosmosResourceExistsError:
            raise DocumentExists(body["id"])


def replace_document(container: ContainerProxy, body: Dict[str, Any]) -> Dict[str, Any]:
    """Compare-and-swap: the write only lands if the document still has the etag it was read with."""
    with store_operation(f"replace {_name(container)}"):
        try:
            return container.replace_item(
                item=body["id"],
                body=body,
                etag=body.get("_etag"),
                match_condition=MatchConditions.IfNotModified
            )
        except exceptions.CosmosResourceNotFoundError as e:
            raise NotFound(_name(container), body["id"]) from e
        except exceptions.CosmosHttpResponseError as e:
            if e.status_code == 412:
                raise StaleWrite(_name(container), body["id"]) from e
            raise


def patch_document(
    container: ContainerProxy,
    item_id: str,
    operations: List[Dict[str, Any]],
    condition: Optional[str] = None
) -> Dict[str, Any]:
    """Apply server-side patch operations, guarded by a filter predicate when given."""
    with store_operation(f"patch {_name(container)}"):
        try:
            return container.patch_item(
                item=item_id,
                partition_key=item_id,
                patch_operations=operations,
                filter_predicate=condition
            )
        except exceptions.CosmosResourceNotFoundError as e:
            raise NotFound(_name(container), item_id) from e
        except exceptions.CosmosHttpResponseError as e:
            if e.status_code == 412:
                raise StaleWrite(_name(container), item_id) from e
            raise


def query_documents(
    container: ContainerProxy,
    query: str,
    parameters: Optional[List[Dict[str, Any]]] = None
) -> List[Dict[str, Any]]:
    with store_operation(f"query {_name(container)}"):
        return list(container.query_items(
            query=query,
            parameters=parameters or [],
            enable_cross_partition_query=True
        ))


def delete_document(container: ContainerProxy, item_id: str) -> None:
    with store_operation(f"delete {_name(container)}"):
        try:
            container.delete_item(item=item_id, partition_key=item_id)
        except exceptions.CosmosResourceNotFoundError:
            pass


def update_document(
    container: ContainerProxy,
    item_id: str,
    mutate: Callable[[Dict[str, Any]], bool],
    resource: str,
    attempts: int = 3
) -> Dict[str, Any]:
    """
    Read, mutate and compare-and-swap a document, re-reading on conflicts.
    ``mutate`` edits the document in place and returns False to skip the write.
    """
    for _ in range(attempts):
        doc = read_document(container, item_id)
        if doc is None:
            raise NotFound(resource, item_id)
        if not mutate(doc):
            return doc
        try:
            return replace_document(container, doc)
        except StaleWrite:
            continue
    raise StaleWrite(resource, item_id)
