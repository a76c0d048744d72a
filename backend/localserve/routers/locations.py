from fastapi import APIRouter, HTTPException

from localserve.models import PincodeLocation
from localserve.services.pincode_lookup import PincodeLookupError, PincodeNotFoundError, pincode_lookup

router = APIRouter(prefix="/locations", tags=["locations"])


@router.get("/pincode/{pincode}", response_model=PincodeLocation)
def resolve_pincode(pincode: str):
    try:
        return pincode_lookup.lookup(pincode)
    except PincodeNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except PincodeLookupError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
