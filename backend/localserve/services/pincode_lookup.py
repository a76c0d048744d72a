import logging
import os
import re
from typing import Optional

import httpx

from localserve.models import PincodeLocation

logger = logging.getLogger(__name__)

PINCODE_PATTERN = re.compile(r"^[1-9][0-9]{5}$")


class PincodeLookupError(RuntimeError):
    pass


class PincodeNotFoundError(PincodeLookupError):
    pass


class PincodeLookup:
    def __init__(
        self,
        base_url: str = "https://api.postalpincode.in",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def lookup(self, pincode: str) -> PincodeLocation:
        cleaned = pincode.strip()
        if not PINCODE_PATTERN.match(cleaned):
            raise PincodeNotFoundError("Invalid pincode")
        try:
            with httpx.Client(base_url=self._base_url, timeout=self._timeout, transport=self._transport) as client:
                response = client.get(f"/pincode/{cleaned}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("Pincode lookup failed for %s", cleaned)
            raise PincodeLookupError("Failed to fetch location details") from exc

        # The API answers with a one-element list wrapping the result.
        entry = data[0] if isinstance(data, list) and data and isinstance(data[0], dict) else {}
        offices = entry.get("PostOffice") or []
        if entry.get("Status") != "Success" or not isinstance(offices, list) or not offices:
            raise PincodeNotFoundError("Invalid pincode")
        if not isinstance(offices[0], dict):
            raise PincodeLookupError("Unexpected response from pincode service")
        office = offices[0]
        return PincodeLocation(pincode=cleaned, city=office.get("District", ""), state=office.get("State", ""))


pincode_lookup = PincodeLookup(base_url=os.getenv("PINCODE_API_BASE", "https://api.postalpincode.in"))
