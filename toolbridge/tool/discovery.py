from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List

from toolbridge.constants import DISCOVERY_TIMEOUT_SECONDS

from .errors import ProtocolUnsupported
from .types import Capabilities

logger = logging.getLogger(__name__)


async def _probe(
    server_id: str,
    category: str,
    probe: Callable[[], Awaitable[List[Any]]],
    timeout: float,
) -> List[Any]:
    try:
        return list(await asyncio.wait_for(probe(), timeout=timeout))
    except ProtocolUnsupported:
        logger.info("Server %s does not support %s (method not found)", server_id, category)
    except asyncio.TimeoutError:
        logger.warning("Listing %s for %s timed out after %ss", category, server_id, timeout)
    except Exception as e:
        logger.warning("Failed to list %s for %s: %s", category, server_id, e)
    return []


async def discover_capabilities(
    server_id: str, client: Any, timeout: float = DISCOVERY_TIMEOUT_SECONDS
) -> Capabilities:
    """Probe tools, resources and prompts independently.

    A category the provider does not implement, or one whose probe fails or
    does not answer within ``timeout`` seconds, comes back empty; the other
    categories are unaffected.
    """
    capabilities = Capabilities(
        tools=await _probe(server_id, "tools", client.list_tools, timeout),
        resources=await _probe(server_id, "resources", client.list_resources, timeout),
        prompts=await _probe(server_id, "prompts", client.list_prompts, timeout),
    )
    logger.info("Server %s capabilities: %s", server_id, capabilities.summary())
    if capabilities.tools:
        logger.debug(
            "Server %s tools: %s", server_id, [tool.name for tool in capabilities.tools]
        )
    return capabilities
