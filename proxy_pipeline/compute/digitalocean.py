"""DigitalOcean droplets as ephemeral transcode instances."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from proxy_pipeline.common.config import Settings
from proxy_pipeline.common.errors import ComputeError, ProvisioningError
from proxy_pipeline.common.schemas import ComputeInstance

from .bootstrap import BootstrapPayload

logger = logging.getLogger(__name__)

TRANSCODER_TAG = "fast-transcoder"
BASE_TAGS = [TRANSCODER_TAG, "auto-delete"]


def _safe_tag(value: str) -> str:
    # droplet tags allow letters, digits, colons, dashes and underscores
    return "".join(c if c.isalnum() or c in ":-_" else "_" for c in value)


def _parse_created(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def normalize_droplet(payload: Dict[str, Any]) -> ComputeInstance:
    """Canonical ComputeInstance for a droplet JSON object."""
    tags = [str(t) for t in payload.get("tags") or []]
    job_id = next((t[len("job:"):] for t in tags if t.startswith("job:")), None)
    file_id = next((t[len("file:"):] for t in tags if t.startswith("file:")), None)
    return ComputeInstance(
        instance_id=str(payload["id"]),
        name=payload.get("name") or "",
        job_id=job_id,
        file_id=file_id,
        created_at=_parse_created(payload.get("created_at")),
        tags=tags,
    )


class DropletProvisioner:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.do_api_token}",
        }

    def _url(self, path: str) -> str:
        return f"{self.settings.do_api_base.rstrip('/')}{path}"

    def provision(self, job_id: str, file_id: str, payload: BootstrapPayload) -> ComputeInstance:
        if not self.settings.do_api_token:
            raise ProvisioningError("Digital Ocean API token is missing")
        if not self.settings.do_ssh_key_ids:
            raise ProvisioningError("SSH key IDs are required for droplet creation")

        body = {
            "name": f"transcode-{_safe_tag(file_id)[:8]}",
            "region": self.settings.do_region,
            "size": self.settings.do_droplet_size,
            "image": self.settings.do_image,
            "ssh_keys": self.settings.do_ssh_key_ids,
            "backups": False,
            "ipv6": False,
            "user_data": payload.script,
            "tags": BASE_TAGS + [f"job:{_safe_tag(job_id)}", f"file:{_safe_tag(file_id)}"],
        }
        logger.info("Creating droplet for job %s", job_id)
        try:
            resp = self.session.post(
                self._url("/droplets"), json=body, headers=self._headers(),
                timeout=self.settings.do_timeout_seconds,
            )
        except requests.RequestException as e:
            raise ProvisioningError(f"Failed to reach Digital Ocean: {e}") from e

        if not resp.ok:
            raise ProvisioningError(f"Digital Ocean API error ({resp.status_code}): {resp.text[:500]}")
        droplet = (resp.json() or {}).get("droplet")
        if not droplet or not droplet.get("id"):
            raise ProvisioningError("Digital Ocean response missing droplet data")

        instance = normalize_droplet(droplet)
        logger.info("Created droplet %s for job %s", instance.instance_id, job_id)
        return instance

    def deprovision(self, instance_id: str) -> None:
        """Delete a droplet; an already-deleted droplet counts as success."""
        try:
            resp = self.session.delete(
                self._url(f"/droplets/{instance_id}"), headers=self._headers(),
                timeout=self.settings.do_timeout_seconds,
            )
        except requests.RequestException as e:
            raise ComputeError(f"Failed to delete droplet {instance_id}: {e}") from e
        if resp.status_code == 404:
            logger.info("Droplet %s already gone", instance_id)
            return
        if not resp.ok:
            raise ComputeError(f"Failed to delete droplet {instance_id} ({resp.status_code}): {resp.text[:500]}")

    def list_instances(self, tag: str = TRANSCODER_TAG) -> List[ComputeInstance]:
        instances: List[ComputeInstance] = []
        url: Optional[str] = self._url("/droplets")
        params: Optional[Dict[str, Any]] = {"tag_name": tag, "per_page": 200}
        while url:
            try:
                resp = self.session.get(url, params=params, headers=self._headers(),
                                        timeout=self.settings.do_timeout_seconds)
            except requests.RequestException as e:
                raise ComputeError(f"Failed to list droplets: {e}") from e
            if not resp.ok:
                raise ComputeError(f"Failed to list droplets ({resp.status_code}): {resp.text[:500]}")
            data = resp.json() or {}
            instances.extend(normalize_droplet(d) for d in data.get("droplets") or [])
            # next page url already carries the query string
            url = ((data.get("links") or {}).get("pages") or {}).get("next")
            params = None
        return instances

    def check(self) -> None:
        if not self.settings.do_api_token:
            raise ComputeError("not configured")
        try:
            resp = self.session.get(self._url("/account/keys"), headers=self._headers(),
                                    timeout=self.settings.do_timeout_seconds)
        except requests.RequestException as e:
            raise ComputeError(str(e)) from e
        if not resp.ok:
            raise ComputeError(f"HTTP {resp.status_code}: {resp.reason}")
