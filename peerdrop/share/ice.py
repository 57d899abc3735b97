import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

FALLBACK_ICE_SERVERS = [
    {"urls": "stun:stun.relay.metered.ca:80"},
    {"urls": "stun:stun.l.google.com:19302"},
]


def fetch_ice_servers(url: Optional[str], timeout: float = 5) -> List[Dict[str, Any]]:
    """
    Fetch relay/traversal server descriptors from a credentials endpoint.

    Any failure falls back to the public STUN list, so link setup never fails
    only because the credentials service is down.
    """
    if not url:
        return list(FALLBACK_ICE_SERVERS)
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        servers = resp.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.warning(f"Failed to fetch TURN credentials from {url}: {e}")
        return list(FALLBACK_ICE_SERVERS)

    if not isinstance(servers, list):
        servers = []
    servers = [s for s in servers if isinstance(s, dict) and s.get("urls")]
    if not servers:
        logger.warning(f"No usable ICE servers from {url}, falling back to public STUN")
        return list(FALLBACK_ICE_SERVERS)
    logger.info(f"TURN credentials loaded: {len(servers)} servers")
    return servers
