"""Cluster configuration discovered from the GCE metadata server."""

from __future__ import annotations

import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

METADATA_IP = "169.254.169.254"
METADATA_HOST_ENV = "GCE_METADATA_HOST"
_FLAVOR_HEADER = "Metadata-Flavor"
_FLAVOR_VALUE = "Google"

Fetch = Callable[[str, Mapping[str, str], float], Tuple[int, Mapping[str, str], str]]


@dataclass(frozen=True)
class GceConfig:
    """GCE-related configuration parameters of the cluster."""

    project: str
    location: str
    cluster: str
    instance: str


def _urllib_fetch(url: str, headers: Mapping[str, str], timeout: float):
    request = urllib.request.Request(url, headers=dict(headers))
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body = response.read().decode("utf-8")
            return response.status, {k.lower(): v for k, v in response.headers.items()}, body
    except urllib.error.HTTPError as err:
        body = err.read().decode("utf-8", errors="replace")
        return err.code, {k.lower(): v for k, v in err.headers.items()}, body


class MetadataClient:
    """Minimal client for the GCE instance metadata server."""

    def __init__(self, host: Optional[str] = None, timeout: float = 2.0, fetch: Optional[Fetch] = None):
        self.host = host or os.environ.get(METADATA_HOST_ENV) or METADATA_IP
        self.timeout = timeout
        self._fetch = fetch or _urllib_fetch

    def _request(self, url: str):
        return self._fetch(url, {_FLAVOR_HEADER: _FLAVOR_VALUE}, self.timeout)

    def on_gce(self) -> bool:
        """Report whether the metadata server is reachable."""
        if os.environ.get(METADATA_HOST_ENV):
            return True
        try:
            _, headers, _ = self._request(f"http://{self.host}")
        except OSError:
            return False
        flavor = {k.lower(): v for k, v in headers.items()}.get(_FLAVOR_HEADER.lower())
        return flavor == _FLAVOR_VALUE

    def get(self, suffix: str) -> str:
        """Return the raw metadata value at suffix; raise OSError if unavailable."""
        url = f"http://{self.host}/computeMetadata/v1/{suffix.lstrip('/')}"
        status, _, body = self._request(url)
        if status == 404:
            raise OSError(f"metadata: GCE metadata {suffix!r} not defined")
        if status != 200:
            raise OSError(f"metadata: GCE metadata {suffix!r} returned status {status}")
        return body

    def project_id(self) -> str:
        return self.get("project/project-id").strip()

    def instance_attribute_value(self, attribute: str) -> str:
        return self.get(f"instance/attributes/{attribute}")

    def zone(self) -> str:
        """Return the zone name, without the projects/.../zones/ prefix."""
        return self.get("instance/zone").strip().rsplit("/", 1)[-1]

    def hostname(self) -> str:
        return self.get("instance/hostname").strip()


def get_gce_config(client: Optional[MetadataClient] = None) -> GceConfig:
    """Build a GceConfig from the metadata server; raise RuntimeError on failure."""
    client = client or MetadataClient()
    if not client.on_gce():
        raise RuntimeError("Not running on GCE.")

    try:
        project = client.project_id()
    except OSError as err:
        raise RuntimeError(f"error while getting project id: {err}") from err

    try:
        location = client.instance_attribute_value("cluster-location")
    except OSError as err:
        logger.warning("Failed to retrieve cluster location, falling back to local zone: %s", err)
        try:
            location = client.zone()
        except OSError as zone_err:
            raise RuntimeError(f"error while getting cluster location: {zone_err}") from zone_err

    try:
        cluster = client.instance_attribute_value("cluster-name")
    except OSError as err:
        raise RuntimeError(f"error while getting cluster name: {err}") from err

    try:
        instance = client.hostname()
    except OSError as err:
        raise RuntimeError(f"error while getting instance hostname: {err}") from err

    return GceConfig(
        project=project,
        location=location.strip(),
        cluster=cluster.strip(),
        instance=instance,
    )