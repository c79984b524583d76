"""Gateway health probe: ``GET http://127.0.0.1:<port>/health``, any 2xx = up."""

import logging

import httpx

logger = logging.getLogger("claw_pilot.probe")

HEALTH_PATH = "/health"


def health_url(port: int, host: str = "127.0.0.1") -> str:
    return f"http://{host}:{port}{HEALTH_PATH}"


async def probe_gateway(
    port: int,
    timeout: float = 5.0,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """True when the gateway answers 2xx within ``timeout``.

    Transport errors and timeouts read as False; they are the normal
    answer from a gateway that is still booting.
    """
    url = health_url(port)
    try:
        if client is not None:
            resp = await client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as own:
                resp = await own.get(url)
    except httpx.HTTPError as e:
        logger.debug("probe %s failed: %s", url, e)
        return False
    return resp.is_success
