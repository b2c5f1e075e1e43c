"""AMD Key Distribution Service access

``AiohttpGetter`` is the real HTTPS getter the fake ``Getter`` stands in
for. Both return ``(body, error)`` from ``get`` and ``get_async``, so code
fetching certificates can be pointed at either.
"""

import asyncio
import logging
from typing import Optional, Tuple

import aiohttp

from .abi import TCBVersion
from .config import HTTP_TIMEOUT, KDS_BASE_URL
from .errors import NotFoundError

logger = logging.getLogger(__name__)

# AMD Key Distribution Service URL templates
KDS_VCEK_PATH = "/vcek/v1/{product}/{hwid}"
KDS_CERT_CHAIN_PATH = "/vcek/v1/{product}/cert_chain"


def cert_chain_url(product: str, base_url: str = KDS_BASE_URL) -> str:
    """URL of the ASK/ARK chain for a product line ('Milan', 'Genoa', ...)"""
    return base_url.rstrip('/') + KDS_CERT_CHAIN_PATH.format(product=product)


def vcek_url(product: str, chip_id: bytes, tcb: TCBVersion, base_url: str = KDS_BASE_URL) -> str:
    """URL of the VCEK for a chip at a reported TCB"""
    path = KDS_VCEK_PATH.format(product=product, hwid=chip_id.hex())
    return (f"{base_url.rstrip('/')}{path}"
            f"?blSPL={tcb.bootloader}&teeSPL={tcb.tee}&snpSPL={tcb.snp}&ucodeSPL={tcb.microcode}")


class AiohttpGetter:
    """HTTPS getter backed by aiohttp"""

    def __init__(self, timeout: float = HTTP_TIMEOUT):
        self.timeout = timeout

    async def get_async(self, url: str) -> Tuple[Optional[bytes], Optional[Exception]]:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    body = await resp.read()
                    if resp.status == 404:
                        return body, NotFoundError(url)
                    if resp.status != 200:
                        return body, aiohttp.ClientResponseError(
                            resp.request_info, resp.history,
                            status=resp.status, message=f"HTTP {resp.status}",
                        )
                    return body, None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("GET %s failed: %s", url, e)
            return None, e

    def get(self, url: str) -> Tuple[Optional[bytes], Optional[Exception]]:
        return asyncio.run(self.get_async(url))


async def fetch_cert_chain(getter, product: str, base_url: str = KDS_BASE_URL) -> bytes:
    """Download the ASK/ARK PEM chain for ``product`` through ``getter``.

    Raises whatever error the getter returned.
    """
    url = cert_chain_url(product, base_url)
    body, err = await getter.get_async(url)
    if err is not None:
        raise err
    logger.debug("Fetched %d byte cert chain from %s", len(body), url)
    return body
