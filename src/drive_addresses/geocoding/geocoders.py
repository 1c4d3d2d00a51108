"""
Nominatim reverse geocoding client implementing the ReverseGeocoder interface.

Uses the OpenStreetMap Nominatim `/reverse` endpoint (jsonv2 output with
address details). The public instance asks for a descriptive User-Agent
and at most one request per second.

Reference: https://nominatim.org/release-docs/latest/api/Reverse/
"""

import json
import time
from typing import Optional, Any, Dict
import logging

import requests
from pydantic import ValidationError

from .base import ReverseGeocoder, RateLimiter
from .models import GeocodeError, GeocodeStatus, ProviderAddress, ReverseGeocodeResult

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://nominatim.openstreetmap.org"
DEFAULT_USER_AGENT = "drive-address-backfill/0.1"

# Worth another attempt
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class NominatimGeocoder(ReverseGeocoder):
    """
    Nominatim reverse geocoder.

    Handles rate limiting, retries with exponential backoff on transport
    errors, throttling (429) and server errors, and maps Nominatim's
    `{"error": ...}` payload to NOT_FOUND.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        email: Optional[str] = None,
        timeout: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
        max_retries: int = 3,
        retry_delay_s: float = 1.0,
        zoom: int = 18,
        accept_language: Optional[str] = None,
        proxy: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize Nominatim client.

        Args:
            base_url: Nominatim server (public instance or self-hosted)
            user_agent: Application identifier sent with every request
            email: Contact address appended to the User-Agent
            timeout: HTTP request timeout in seconds
            rate_limiter: Optional rate limiter (defaults to no limit)
            max_retries: Number of attempts per coordinate
            retry_delay_s: Base delay between attempts in seconds
            zoom: Address detail level (18 = building)
            accept_language: Preferred language for names, e.g. "en"
            proxy: HTTP(S) proxy URL used for all requests
            session: Optional preconfigured requests session
        """
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        self.base_url = base_url
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.zoom = zoom
        self.accept_language = accept_language

        self.session = session or requests.Session()
        agent = f"{user_agent} ({email})" if email else user_agent
        self.session.headers.update({"User-Agent": agent, "Accept": "application/json"})
        if proxy:
            self.session.proxies.update({"http": proxy, "https": proxy})

        logger.info(
            f"Initialized NominatimGeocoder: {base_url}, "
            f"retries={max_retries}, timeout={timeout}s, proxy={'yes' if proxy else 'no'}"
        )

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/reverse"

    def _params(self, latitude: float, longitude: float) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "lat": latitude,
            "lon": longitude,
            "format": "jsonv2",
            "addressdetails": 1,
            "zoom": self.zoom,
        }
        if self.accept_language:
            params["accept-language"] = self.accept_language
        return params

    def reverse_geocode(self, latitude: float, longitude: float) -> ReverseGeocodeResult:
        """
        Reverse geocode a single coordinate.

        Args:
            latitude: Latitude in decimal degrees
            longitude: Longitude in decimal degrees

        Returns:
            ReverseGeocodeResult with the provider address or error details
        """
        params = self._params(latitude, longitude)
        params_json = json.dumps(params)[:500]

        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            return ReverseGeocodeResult(
                latitude=latitude,
                longitude=longitude,
                status=GeocodeStatus.INVALID_INPUT,
                errors=[GeocodeError(
                    endpoint="validation",
                    error_label="invalid_coordinate",
                    api_message="Coordinate out of range",
                    params_json=params_json,
                )],
            )

        last_error: Optional[GeocodeError] = None

        for attempt in range(self.max_retries):
            if self.rate_limiter:
                self.rate_limiter.wait()

            try:
                response = self.session.get(self.endpoint, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                logger.warning(
                    f"Attempt {attempt+1}/{self.max_retries} failed for "
                    f"({latitude}, {longitude}): {e}"
                )
                last_error = GeocodeError(
                    endpoint="reverse",
                    error_label="exception",
                    api_message=str(e)[:500],
                    params_json=params_json,
                )
                self._backoff(attempt)
                continue

            if response.status_code in _RETRYABLE_STATUS:
                logger.warning(
                    f"Attempt {attempt+1}/{self.max_retries} for ({latitude}, {longitude}) "
                    f"returned HTTP {response.status_code}"
                )
                last_error = GeocodeError(
                    endpoint="reverse",
                    http_status=response.status_code,
                    error_label=f"http_{response.status_code}",
                    body_snippet=response.text[:200] if response.text else "",
                    params_json=params_json,
                )
                self._backoff(attempt)
                continue

            return self._parse_response(latitude, longitude, response, params_json)

        # All retries exhausted
        return ReverseGeocodeResult(
            latitude=latitude,
            longitude=longitude,
            status=GeocodeStatus.EXCEPTION if last_error and last_error.http_status is None
            else GeocodeStatus.API_ERROR,
            errors=[last_error] if last_error else [],
        )

    def _backoff(self, attempt: int) -> None:
        if attempt < self.max_retries - 1 and self.retry_delay_s > 0:
            time.sleep(self.retry_delay_s * (2 ** attempt))

    def _parse_response(
        self,
        latitude: float,
        longitude: float,
        response: requests.Response,
        params_json: str,
    ) -> ReverseGeocodeResult:
        """Turn a non-retryable HTTP response into a result."""
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.ok:
            api_message = None
            if isinstance(payload, dict):
                api_message = str(payload.get("error") or payload.get("message") or "")[:500] or None
            return ReverseGeocodeResult(
                latitude=latitude,
                longitude=longitude,
                status=GeocodeStatus.API_ERROR,
                errors=[GeocodeError(
                    endpoint="reverse",
                    http_status=response.status_code,
                    error_label=f"http_{response.status_code}",
                    api_message=api_message,
                    body_snippet=response.text[:200] if response.text else "",
                    params_json=params_json,
                )],
            )

        if not isinstance(payload, dict):
            return ReverseGeocodeResult(
                latitude=latitude,
                longitude=longitude,
                status=GeocodeStatus.API_ERROR,
                errors=[GeocodeError(
                    endpoint="reverse",
                    http_status=response.status_code,
                    error_label="invalid_json",
                    body_snippet=response.text[:200] if response.text else "",
                    params_json=params_json,
                )],
            )

        # Nominatim answers 200 with {"error": "Unable to geocode"} for open sea etc.
        if "error" in payload:
            return ReverseGeocodeResult(
                latitude=latitude,
                longitude=longitude,
                status=GeocodeStatus.NOT_FOUND,
                errors=[GeocodeError(
                    endpoint="reverse",
                    http_status=response.status_code,
                    error_label="no_result",
                    api_message=str(payload.get("error"))[:500],
                    params_json=params_json,
                )],
            )

        try:
            address = ProviderAddress.model_validate(payload)
        except ValidationError as e:
            return ReverseGeocodeResult(
                latitude=latitude,
                longitude=longitude,
                status=GeocodeStatus.API_ERROR,
                errors=[GeocodeError(
                    endpoint="reverse",
                    http_status=response.status_code,
                    error_label="invalid_payload",
                    api_message=str(e)[:500],
                    body_snippet=json.dumps(payload, default=str)[:200],
                    params_json=params_json,
                )],
            )

        logger.debug(f"Reverse geocoded ({latitude}, {longitude}) -> {address.display_name}")

        return ReverseGeocodeResult(
            latitude=latitude,
            longitude=longitude,
            status=GeocodeStatus.OK,
            address=address,
        )

    def close(self) -> None:
        self.session.close()
