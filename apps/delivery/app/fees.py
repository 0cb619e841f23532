import logging
import math
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from . import config
from .errors import DistanceExceeded, ValidationFailed
from .geo import haversine_km, valid_coords
from .lalamove import CourierClient, ProviderError, get_courier_client

_log = logging.getLogger("lastmile.delivery.fees")


class FeeEstimate(BaseModel):
    distance_km: float
    delivery_fee: int
    source: str  # "provider" | "formula"
    quotation_id: Optional[str] = None
    quotation_expires_at: Optional[datetime] = None


def fallback_fee(distance_km: float) -> int:
    """min(cap, base + per_km * ceil(distance))"""
    return min(config.FEE_CAP, config.BASE_FEE + config.PER_KM_FEE * math.ceil(distance_km))


def estimate_fee(
    pickup_lat: float,
    pickup_lng: float,
    dropoff_lat: float,
    dropoff_lng: float,
    dropoff_address: str = "",
    *,
    pickup_address: str = "",
    client: Optional[CourierClient] = None,
) -> FeeEstimate:
    if not valid_coords(pickup_lat, pickup_lng):
        raise ValidationFailed("shop pickup location is invalid", code="no_pickup_location")
    if not valid_coords(dropoff_lat, dropoff_lng):
        raise ValidationFailed("invalid coordinates", code="invalid_coordinates")
    distance = haversine_km(pickup_lat, pickup_lng, dropoff_lat, dropoff_lng)
    if distance > config.MAX_DISTANCE_KM:
        raise DistanceExceeded(distance, config.MAX_DISTANCE_KM)
    rounded = round(distance, 1)

    client = client or get_courier_client()
    if client is not None:
        try:
            q = client.quote(
                pickup_lat, pickup_lng, pickup_address,
                dropoff_lat, dropoff_lng, dropoff_address,
            )
            return FeeEstimate(
                distance_km=rounded,
                delivery_fee=q.fee,
                source="provider",
                quotation_id=q.quotation_id,
                quotation_expires_at=q.expires_at,
            )
        except ProviderError as e:
            _log.warning("quote failed, using distance formula: %s", e)
        except Exception:
            _log.error("quote raised unexpectedly, using distance formula", exc_info=True)
    return FeeEstimate(distance_km=rounded, delivery_fee=fallback_fee(distance), source="formula")
