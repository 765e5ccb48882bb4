import logging
from typing import Callable, Optional

from .config import SegfetchConfig, load_config
from .errors import TransferError
from .network_io import Address
from .receive_engine import Outcome, OutcomeStatus, Requester
from .send_engine import Provider
from .storage import FileStorage

logger = logging.getLogger(__name__)


def create_provider(
    host: Optional[str] = None,
    port: Optional[int] = None,
    resource_root: Optional[str] = None,
    config_path: Optional[str] = None,
    config: Optional[SegfetchConfig] = None,
) -> Provider:
    """Create and configure a provider instance."""
    if config is None:
        config = load_config(config_path)

    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port
    if resource_root is not None:
        config.server.resource_root = resource_root
    config.validate()

    storage = FileStorage(resource_root=config.server.resource_root)
    return Provider(config.server, config.transfer, storage)


def create_requester(
    output_dir: Optional[str] = None,
    confirm: Optional[Callable[[int], bool]] = None,
    config_path: Optional[str] = None,
    config: Optional[SegfetchConfig] = None,
) -> Requester:
    """Create and configure a requester instance."""
    if config is None:
        config = load_config(config_path)

    if output_dir is not None:
        config.client.output_dir = output_dir
    config.validate()

    storage = FileStorage(
        output_dir=config.client.output_dir,
        output_prefix=config.client.output_prefix,
    )
    return Requester(config.transfer, storage, confirm=confirm)


# Public API used by CLI
# ------------------------------------------------------------------

def request(
    address: Address,
    resource_name: str,
    output_dir: Optional[str] = None,
    confirm: Optional[Callable[[int], bool]] = None,
    config_path: Optional[str] = None,
    config: Optional[SegfetchConfig] = None,
) -> Outcome:
    """
    Fetch one resource from the provider at address.

    Never raises TransferError: failures come back as an Outcome with
    status ERROR and the exception in Outcome.error.
    """
    requester = create_requester(
        output_dir=output_dir,
        confirm=confirm,
        config_path=config_path,
        config=config,
    )
    try:
        return requester.fetch(address, resource_name)
    except TransferError as e:
        logger.error("Fetching %r from %s:%d failed: %s", resource_name, address[0], address[1], e)
        return Outcome(OutcomeStatus.ERROR, resource=resource_name, error=e)


def serve_forever(
    address: Address,
    resource_root: str,
    max_connections: Optional[int] = None,
    config_path: Optional[str] = None,
    config: Optional[SegfetchConfig] = None,
) -> Provider:
    """Serve files under resource_root on address until stopped."""
    provider = create_provider(
        host=address[0],
        port=address[1],
        resource_root=resource_root,
        config_path=config_path,
        config=config,
    )
    provider.serve_forever(max_connections=max_connections)
    return provider
