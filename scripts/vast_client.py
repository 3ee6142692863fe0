import logging
import time
from typing import Any, Dict, List, Optional

import requests

from app.config import settings

logger = logging.getLogger(__name__)

# Provider states in which the machine is still billing
RUNNING_STATES = frozenset({"running", "loading"})


class VastAIError(Exception):
    """Raised when a Vast.ai API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class VastAIClient:
    """A client for interacting with the Vast.ai marketplace API."""

    BASE_URL = "https://console.vast.ai/api/v0"

    def __init__(self, api_key: str = None, base_url: str = None, timeout: int = 30):
        """Initialize the Vast.ai client."""
        api_key = api_key or settings.vast_api_key
        if not api_key:
            raise ValueError(
                "No API key provided and VAST_API_KEY environment variable not set"
            )

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            }
        )
        self.base_url = base_url or settings.vast_api_base_url or self.BASE_URL
        self.timeout = timeout

    def _make_request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Make an HTTP request to the Vast.ai API."""
        url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            body = e.response.text[:500] if e.response is not None else ""
            raise VastAIError(
                f"{method} {endpoint} failed with {status_code}: {body}",
                status_code=status_code,
            ) from e
        except requests.exceptions.RequestException as e:
            raise VastAIError(f"{method} {endpoint} failed: {e}") from e

    # ==================== Offers ====================

    def search_offers(
        self,
        min_vram_gb: Optional[int] = None,
        max_price: Optional[float] = None,
        gpu_name: Optional[str] = None,
        limit: int = 50,
    ) -> List[dict]:
        """Search rentable offers, cheapest first."""
        q: Dict[str, Any] = {
            "rentable": {"eq": True},
            "rented": {"eq": False},
            "verified": {"eq": True},
            "external": {"eq": False},
            # Fractional GPUs share memory with other tenants
            "gpu_frac": {"gte": 1.0},
            "order": [["dph_total", "asc"]],
            "type": "on-demand",
            "limit": limit,
        }
        if min_vram_gb:
            q["gpu_ram"] = {"gte": min_vram_gb * 1024}  # API expects MB
        if max_price:
            q["dph_total"] = {"lte": max_price}
        if gpu_name:
            q["gpu_name"] = {"eq": gpu_name}

        resp = self._make_request("POST", "/bundles/", json={"q": q})
        offers = resp.get("offers") or []
        return sorted(offers, key=lambda o: float(o.get("dph_total") or 0))

    def select_offer(
        self,
        min_vram_gb: Optional[int] = None,
        max_price: Optional[float] = None,
        gpu_name: Optional[str] = None,
    ) -> Optional[dict]:
        """Get the cheapest matching offer, normalized."""
        offers = self.search_offers(min_vram_gb, max_price, gpu_name)
        if not offers:
            logger.warning("No GPU offers currently available")
            return None

        offer = offers[0]
        return {
            "id": str(offer["id"]),
            "gpu_name": offer.get("gpu_name"),
            "hourly_rate": float(offer.get("dph_total") or 0),
            "vram_gb": (offer.get("gpu_ram") or 0) / 1024,
        }

    # ==================== Instances ====================

    def create_instance(
        self,
        offer_id: str,
        image: str,
        disk_gb: int,
        label: str,
        onstart: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """Rent an offer. Returns the new instance id, or None when the API omits it."""
        payload: Dict[str, Any] = {
            "client_id": "me",
            "image": image,
            "disk": disk_gb,
            "label": label,
            "runtype": "ssh",
        }
        if onstart:
            payload["onstart"] = onstart
        if env:
            payload["env"] = env

        resp = self._make_request("PUT", f"/asks/{offer_id}/", json=payload)
        if resp.get("success") is False:
            raise VastAIError(resp.get("msg") or f"Failed to rent offer {offer_id}")

        instance_id = resp.get("new_contract") or resp.get("instance_id") or resp.get("id")
        return str(instance_id) if instance_id else None

    def list_instances(self) -> List[dict]:
        """List all instances on the account."""
        resp = self._make_request("GET", "/instances/")
        return resp.get("instances") or []

    def get_instance(self, instance_id: str) -> Optional[dict]:
        """Get details of a specific instance, or None if it no longer exists."""
        try:
            resp = self._make_request("GET", f"/instances/{instance_id}/")
        except VastAIError as e:
            if e.is_not_found:
                return None
            raise
        # The instance payload is wrapped in "instances" (a single object)
        return resp.get("instances") or None

    def get_instance_status(self, instance_id: str) -> Optional[str]:
        """Get the provider status of an instance, None if it is gone."""
        instance = self.get_instance(instance_id)
        if not instance:
            return None
        return instance.get("actual_status") or instance.get("cur_state")

    def is_running(self, instance_id: str) -> bool:
        return self.get_instance_status(instance_id) in RUNNING_STATES

    def find_instance_by_label(self, label: str) -> Optional[dict]:
        for instance in self.list_instances():
            if instance.get("label") == label:
                return instance
        return None

    def attach_ssh_key(self, instance_id: str, public_key: str) -> None:
        self._make_request(
            "POST", f"/instances/{instance_id}/ssh/", json={"ssh_key": public_key}
        )

    def wait_until_running(
        self, instance_id: str, max_wait_time: int = 600, poll_interval: int = 10
    ) -> Optional[dict]:
        """Poll until the instance is running with an SSH endpoint. Returns the
        instance, or None on timeout."""
        elapsed_time = 0
        retry_count = 0
        max_retries = 3

        while elapsed_time < max_wait_time:
            try:
                instance = self.get_instance(instance_id)
                retry_count = 0
                if instance and instance.get("actual_status") == "running" and instance.get("ssh_host"):
                    logger.info(f"Instance {instance_id} is running.")
                    return instance

                status = instance.get("actual_status") if instance else "missing"
                logger.info(
                    f"Status: {status}, waiting {poll_interval}s... (elapsed: {elapsed_time}s)"
                )
            except VastAIError as poll_error:
                retry_count += 1
                if retry_count > max_retries:
                    raise
                logger.warning(
                    f"Polling error (retry {retry_count}/{max_retries}): {poll_error}"
                )

            time.sleep(poll_interval)
            elapsed_time += poll_interval

        logger.warning(f"Timeout waiting for instance {instance_id} after {max_wait_time}s")
        return None

    def terminate_instance(self, instance_id: str) -> bool:
        """Destroy an instance. Returns False if it was already gone."""
        try:
            self._make_request("DELETE", f"/instances/{instance_id}/")
            return True
        except VastAIError as e:
            if e.is_not_found:
                return False
            raise
