from typing import List, Optional

import pybreaker
import requests
from cachetools import TTLCache, cached
from loguru import logger
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from fleet_rental.config.settings import Settings
from fleet_rental.core.circuit_breaker import CircuitBreakerConfig
from fleet_rental.core.exceptions import UpstreamError


class VehicleListing:
    def __init__(self, id: str, station_id: str, status: str):
        self.id = id
        self.station_id = station_id
        self.status = status


class StoredObject:
    def __init__(self, url: str, reference: str):
        self.url = url
        self.reference = reference


class FeePolicy:
    def __init__(
        self,
        version: str,
        late_grace_min: int,
        late_fee_unit_min: int,
        late_fee_multiplier: float,
        recharge_fee_per_percent: int,
    ):
        self.version = version
        self.late_grace_min = late_grace_min
        self.late_fee_unit_min = late_fee_unit_min
        self.late_fee_multiplier = late_fee_multiplier
        self.recharge_fee_per_percent = recharge_fee_per_percent

    @classmethod
    def from_settings(cls, settings: Settings, version: str = "default") -> "FeePolicy":
        return cls(
            version=version,
            late_grace_min=settings.late_grace_min,
            late_fee_unit_min=settings.late_fee_unit_min,
            late_fee_multiplier=settings.late_fee_multiplier,
            recharge_fee_per_percent=settings.recharge_fee_per_percent,
        )


class ExternalClient:
    """HTTP access to the fleet directory, object storage and fee policies."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._session = self._build_session()
        self._timeout = settings.http_timeout_sec
        self._directory_base = settings.directory_base
        self._storage_base = settings.storage_base
        self._policy_cache = TTLCache(maxsize=256, ttl=settings.fee_policy_ttl_sec)

        self._cb_config = CircuitBreakerConfig(settings)
        self._directory_breaker = self._cb_config.get_directory_breaker()
        self._storage_breaker = self._cb_config.get_storage_breaker()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        retries = Retry(
            total=3,
            connect=3,
            read=3,
            backoff_factor=0.3,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset({"GET", "PUT"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retries)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"User-Agent": "fleet-rental/1.0"})
        return session

    @staticmethod
    def _url(base: str, path: str) -> str:
        return f"{base.rstrip('/')}/{path.lstrip('/')}"

    def _get(self, path: str, params: Optional[dict] = None) -> dict:
        response = self._session.get(
            self._url(self._directory_base, path), params=params, timeout=self._timeout
        )
        response.raise_for_status()
        return response.json()

    def list_station_vehicles(
        self, station_id: str, status: str = "AVAILABLE"
    ) -> List[VehicleListing]:
        @self._directory_breaker
        def _list_station_vehicles():
            data = self._get(f"/stations/{station_id}/vehicles", {"status": status})
            return [
                VehicleListing(
                    id=str(v["id"]),
                    station_id=station_id,
                    status=v.get("status", status),
                )
                for v in data["data"]
            ]

        try:
            return _list_station_vehicles()
        except (requests.RequestException, pybreaker.CircuitBreakerError, KeyError) as e:
            logger.warning(f"Directory lookup failed for station {station_id}: {e}")
            raise UpstreamError(
                f"Vehicle directory unavailable for station {station_id}"
            ) from e

    def is_vehicle_available(self, station_id: str, vehicle_id: str) -> bool:
        listings = self.list_station_vehicles(station_id, status="AVAILABLE")
        return any(v.id == vehicle_id for v in listings)

    def upload_photo(
        self,
        content: bytes,
        filename: str,
        content_type: str,
        reference: str,
    ) -> StoredObject:
        @self._storage_breaker
        def _upload():
            # PUT-style semantics: storage dedupes on the reference, so retries are safe
            response = self._session.put(
                self._url(self._storage_base, f"/objects/{reference}"),
                files={"file": (filename, content, content_type)},
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
            return StoredObject(url=data["url"], reference=reference)

        try:
            stored = _upload()
        except (requests.RequestException, pybreaker.CircuitBreakerError, KeyError) as e:
            logger.warning(f"Evidence upload {reference} failed: {e}")
            raise UpstreamError(f"Evidence storage unavailable: {e}") from e

        logger.debug(f"Evidence {reference} stored at {stored.url}")
        return stored

    def get_fee_policy(self, version: str) -> FeePolicy:
        @cached(cache=self._policy_cache)
        def _get_fee_policy_cached(version: str) -> FeePolicy:
            @self._directory_breaker
            def _get_fee_policy_data():
                data = self._get(f"/fee-policies/{version}")
                return FeePolicy(
                    version=version,
                    late_grace_min=int(data["late_grace_min"]),
                    late_fee_unit_min=int(data["late_fee_unit_min"]),
                    late_fee_multiplier=float(data["late_fee_multiplier"]),
                    recharge_fee_per_percent=int(data["recharge_fee_per_percent"]),
                )

            return _get_fee_policy_data()

        try:
            return _get_fee_policy_cached(version)
        except Exception as e:
            logger.warning(
                f"Fee policy {version} unavailable, using configured defaults: {e}"
            )
            return FeePolicy.from_settings(self._settings, version)

    def get_circuit_breaker_stats(self):
        return self._cb_config.get_breaker_stats()
