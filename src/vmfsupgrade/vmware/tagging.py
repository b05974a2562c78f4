"""vSphere tag assignments via the vSphere Automation REST API.

pyvmomi does not expose the tagging service, so tag capture and re-attach
go through ``/api/cis/tagging`` with a session token obtained from
``POST /api/session``.
"""

from __future__ import annotations

from typing import Any

import requests
from pydantic import BaseModel

from vmfsupgrade.utils.logging import get_logger

logger = get_logger(__name__)


class TagAssignment(BaseModel):
    """A tag attached to an inventory object."""
    tag_id: str
    name: str = ""
    category: str = ""


class TaggingClient:
    """List and attach vSphere tags on datastores."""

    def __init__(self, server: str, username: str, password: str, insecure: bool = False):
        self.base = f"https://{server}/api"
        self.session = requests.Session()
        self.session.verify = not insecure
        self.session.headers.update({"Content-Type": "application/json"})
        self._auth = (username, password)
        self._logged_in = False

    def _login(self) -> None:
        resp = self.session.post(f"{self.base}/session", auth=self._auth)
        if not resp.ok:
            logger.error(f"Tagging login failed {resp.status_code}: {resp.text[:500]}")
            resp.raise_for_status()
        self.session.headers["vmware-api-session-id"] = resp.json()
        self._logged_in = True

    def _request(self, method: str, path: str, **kwargs) -> Any:
        if not self._logged_in:
            self._login()
        resp = self.session.request(method, f"{self.base}{path}", **kwargs)
        if not resp.ok:
            logger.error(f"API error {resp.status_code}: {resp.text[:500]}")
            resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _object_id(datastore) -> dict:
        return {"object_id": {"type": "Datastore", "id": datastore._moId}}

    def list_attached(self, datastore) -> list[TagAssignment]:
        """Tags attached to ``datastore``, with tag and category names resolved."""
        tag_ids = self._request(
            "POST", "/cis/tagging/tag-association?action=list-attached-tags",
            json=self._object_id(datastore),
        ) or []
        tags = []
        for tag_id in tag_ids:
            tag = self._request("GET", f"/cis/tagging/tag/{tag_id}")
            category = self._request("GET", f"/cis/tagging/category/{tag['category_id']}")
            tags.append(TagAssignment(tag_id=tag_id, name=tag["name"], category=category["name"]))
        return tags

    def attach(self, tag: TagAssignment, datastore) -> None:
        self._request(
            "POST", f"/cis/tagging/tag-association/{tag.tag_id}?action=attach",
            json=self._object_id(datastore),
        )
        logger.info(f"Attached tag {tag.category}/{tag.name} to datastore {datastore.name}")

    def close(self) -> None:
        if self._logged_in:
            try:
                self.session.delete(f"{self.base}/session")
            except requests.RequestException as e:
                logger.warning(f"Error closing tagging session: {e}")
        self.session.close()
