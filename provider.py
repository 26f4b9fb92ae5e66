"""Bank-aggregation provider collaborator.

The reconciliation core never talks to the network itself; it is handed a
``RecurringStreamProvider`` and only consumes the streams it returns.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from http.client import HTTPException
from urllib.request import Request, urlopen

from pydantic import ValidationError

from config import Settings, get_settings
from errors import UpstreamUnavailable
from schemas import RawStream

logger = logging.getLogger(__name__)


class RecurringStreamProvider(ABC):
    @abstractmethod
    def fetch_recurring_streams(self, access_token: str) -> list[RawStream]:
        """Return the outflow recurring streams for one linked item."""

    def remove_item(self, access_token: str) -> None:
        """Revoke the linked item upstream. Optional for providers."""


def parse_outflow_streams(payload: dict) -> list[RawStream]:
    try:
        raw_streams = payload["outflow_streams"]
    except (KeyError, TypeError) as exc:
        raise UpstreamUnavailable("Unexpected provider response") from exc

    streams: list[RawStream] = []
    for raw in raw_streams or []:
        category = None
        pfc = raw.get("personal_finance_category") or {}
        if pfc.get("primary"):
            category = str(pfc["primary"]).replace("_", " ").title()
        try:
            streams.append(
                RawStream.model_validate(
                    {
                        **raw,
                        "category": category,
                        "predicted_next_date": raw.get("predicted_next_date"),
                    }
                )
            )
        except ValidationError as exc:
            raise UpstreamUnavailable(
                f"Malformed stream in provider response: {raw.get('stream_id')}"
            ) from exc
    return streams


class PlaidRecurringClient(RecurringStreamProvider):
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def _post(self, path: str, body: dict) -> dict:
        url = f"{self.settings.provider_base_url}{path}"
        data = json.dumps(
            {
                "client_id": self.settings.provider_client_id,
                "secret": self.settings.provider_secret,
                **body,
            }
        ).encode("utf-8")
        req = Request(
            url,
            data=data,
            method="POST",
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )
        try:
            with urlopen(req, timeout=self.settings.provider_timeout_secs) as resp:
                return json.loads(resp.read().decode("utf-8"), parse_float=Decimal)
        # URLError and socket timeouts are OSError subclasses.
        except (OSError, HTTPException, json.JSONDecodeError) as exc:
            raise UpstreamUnavailable(f"Provider request failed: {path}") from exc

    def fetch_recurring_streams(self, access_token: str) -> list[RawStream]:
        payload = self._post(
            "/transactions/recurring/get", {"access_token": access_token}
        )
        streams = parse_outflow_streams(payload)
        logger.info(f"provider_fetch: streams={len(streams)}")
        return streams

    def remove_item(self, access_token: str) -> None:
        self._post("/item/remove", {"access_token": access_token})
