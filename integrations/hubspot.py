"""
HubSpot Integration
====================

Read-only CRM client for the pricing analytics:
- Deal pipelines and their stages
- Deals of a pipeline (search API, cursor paginated)
- Line items, contacts and companies associated with a deal

Failures raise APIError subclasses; nothing is masked as an empty result.
HTTP 429 responses are retried with exponential backoff before giving up.

Setup:
1. Create a private app in HubSpot -> Settings -> Integrations -> Private Apps
   with crm.objects.deals.read, crm.objects.line_items.read,
   crm.objects.contacts.read and crm.objects.companies.read scopes.
2. Set HUBSPOT_API_KEY (the private app token) in .env
"""

import asyncio
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from scripts.lib.errors import (
    APIAuthError,
    APIError,
    APIRateLimitError,
    APITimeoutError,
    ConfigError,
)
from scripts.lib.logger import setup_logger

logger = setup_logger("hubspot")

HUBSPOT_API_URL = "https://api.hubapi.com"

DEAL_PROPERTIES = [
    "dealname", "amount", "dealstage", "pipeline", "createdate", "closedate",
    "hs_object_id", "hubspot_owner_id", "fomo_external_id", "motivo_de_no_compra",
    "mp_cliente_email", "mp_cliente_empresa", "mp_cliente_nombre", "mp_cliente_telefono",
    "mp_condiciones_entrega", "mp_condiciones_pago", "mp_condiciones_validez",
    "mp_items_json", "mp_metros_cuadrados_totales", "mp_notas_rapidas",
    "mp_pdf_presupuesto_url", "mp_precio_promedio_m2", "mp_tiene_items_a_cotizar",
    "mp_total_iva", "mp_total_subtotal",
]

LINE_ITEM_PROPERTIES = [
    "name", "quantity", "price", "amount", "hs_sku",
    "mp_largo_mm", "mp_ancho_mm", "mp_alto_mm", "mp_tipo_caja", "mp_calidad",
]

# HubSpot search API maximum page size
SEARCH_PAGE_LIMIT = 100
BATCH_READ_LIMIT = 100


class HubSpotIntegration:
    """HubSpot CRM connector."""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 30.0):
        self.api_key = api_key or os.getenv("HUBSPOT_API_KEY")
        self.client_id = os.getenv("HUBSPOT_CLIENT_ID")
        self.client_secret = os.getenv("HUBSPOT_CLIENT_SECRET")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key or (self.client_id and self.client_secret))

    def _headers(self) -> Dict[str, str]:
        """Build authorization headers."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(APIRateLimitError),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated request to the HubSpot API."""
        if not self.is_configured:
            raise ConfigError("HubSpot is not configured — set HUBSPOT_API_KEY in .env")

        url = f"{HUBSPOT_API_URL}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, headers=self._headers(), params=params, json=json_body,
                ) as resp:
                    if resp.status in (401, 403):
                        raise APIAuthError(url, status_code=resp.status)
                    if resp.status == 429:
                        retry_after = resp.headers.get("Retry-After")
                        logger.warning("HubSpot rate limit hit on %s %s", method, path)
                        raise APIRateLimitError(
                            url, retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                        )
                    if resp.status >= 400:
                        text = await resp.text()
                        logger.error("HubSpot API %s %s returned %s: %s", method, path, resp.status, text)
                        raise APIError(
                            f"HubSpot API {method} {path} returned {resp.status}",
                            status_code=resp.status, url=url, body=text[:500],
                        )
                    return await resp.json()
        except asyncio.TimeoutError as e:
            raise APITimeoutError(url, self.timeout) from e
        except aiohttp.ClientError as e:
            logger.error("HubSpot API request failed: %s", e)
            raise APIError(f"Request failed: {e}", url=url) from e

    # ─── Pipelines ──────────────────────────────────────────────

    async def get_pipelines(self) -> List[Dict]:
        """All deal pipelines, each with its stages."""
        data = await self._request("GET", "/crm/v3/pipelines/deals")
        return data.get("results", [])

    async def get_pipeline(self, pipeline_id: str) -> Dict:
        """One deal pipeline with stages sorted by displayOrder."""
        pipeline = await self._request("GET", f"/crm/v3/pipelines/deals/{pipeline_id}")
        pipeline["stages"] = sorted(
            pipeline.get("stages", []), key=lambda s: s.get("displayOrder", 0),
        )
        return pipeline

    async def get_pipeline_stages(self, pipeline_id: str) -> List[Dict]:
        """Stages of a pipeline in CRM display order."""
        pipeline = await self.get_pipeline(pipeline_id)
        return pipeline["stages"]

    # ─── Deals ──────────────────────────────────────────────────

    async def get_deals(
        self,
        pipeline_id: str,
        stage_ids: Optional[Sequence[str]] = None,
        after: Optional[str] = None,
        limit: int = SEARCH_PAGE_LIMIT,
        created_after: Optional[str] = None,
    ) -> Tuple[List[Dict], Optional[str]]:
        """
        One page of deals in a pipeline, newest first.

        Args:
            pipeline_id: HubSpot pipeline id.
            stage_ids: Restrict to these stages.
            after: Paging cursor returned by the previous page.
            limit: Page size (HubSpot caps it at 100).
            created_after: ISO date/time; only deals created on or after it.

        Returns:
            (deals, next_cursor); next_cursor is None on the last page.
        """
        filters: List[Dict[str, Any]] = [
            {"propertyName": "pipeline", "operator": "EQ", "value": pipeline_id},
        ]
        if stage_ids:
            filters.append({"propertyName": "dealstage", "operator": "IN", "values": list(stage_ids)})
        if created_after:
            filters.append({"propertyName": "createdate", "operator": "GTE", "value": created_after})

        body: Dict[str, Any] = {
            "filterGroups": [{"filters": filters}],
            "properties": DEAL_PROPERTIES,
            "sorts": [{"propertyName": "createdate", "direction": "DESCENDING"}],
            "limit": min(limit, SEARCH_PAGE_LIMIT),
        }
        if after:
            body["after"] = after

        data = await self._request("POST", "/crm/v3/objects/deals/search", json_body=body)
        next_after = ((data.get("paging") or {}).get("next") or {}).get("after")
        return data.get("results", []), next_after

    async def get_all_deals(
        self,
        pipeline_id: str,
        stage_ids: Optional[Sequence[str]] = None,
        created_after: Optional[str] = None,
        max_pages: int = 100,
    ) -> List[Dict]:
        """Follow the paging cursor until exhausted (or max_pages)."""
        deals: List[Dict] = []
        after: Optional[str] = None
        for _ in range(max_pages):
            results, after = await self.get_deals(
                pipeline_id, stage_ids=stage_ids, after=after, created_after=created_after,
            )
            deals.extend(results)
            if not after:
                break
        else:
            logger.warning("Stopped after %d pages of deals for pipeline %s", max_pages, pipeline_id)

        logger.info("Fetched %d deals from pipeline %s", len(deals), pipeline_id)
        return deals

    # ─── Associations ───────────────────────────────────────────

    async def _associated_ids(self, deal_id: str, to_object: str) -> List[str]:
        data = await self._request("GET", f"/crm/v4/objects/deals/{deal_id}/associations/{to_object}")
        return [str(r["toObjectId"]) for r in data.get("results", []) if r.get("toObjectId")]

    async def get_line_items(self, deal_id: str) -> List[Dict]:
        """Line items associated with a deal, tagged with deal_id."""
        ids = await self._associated_ids(deal_id, "line_items")
        items: List[Dict] = []
        for start in range(0, len(ids), BATCH_READ_LIMIT):
            chunk = ids[start:start + BATCH_READ_LIMIT]
            body = {
                "properties": LINE_ITEM_PROPERTIES,
                "inputs": [{"id": item_id} for item_id in chunk],
            }
            data = await self._request("POST", "/crm/v3/objects/line_items/batch/read", json_body=body)
            items.extend(data.get("results", []))

        for item in items:
            item["deal_id"] = deal_id
        return items

    async def get_deal_associations(self, deal_id: str) -> Dict[str, List[str]]:
        """Contact and company ids associated with a deal."""
        contacts, companies = await asyncio.gather(
            self._associated_ids(deal_id, "contacts"),
            self._associated_ids(deal_id, "companies"),
        )
        return {"contacts": contacts, "companies": companies}

    async def get_deal_company_name(
        self, deal_id: str, company_ids: Optional[Sequence[str]] = None,
    ) -> Optional[str]:
        """Name of the first company associated with a deal, if any."""
        if company_ids is None:
            company_ids = await self._associated_ids(deal_id, "companies")
        ids = list(company_ids)
        if not ids:
            return None
        company = await self._request(
            "GET", f"/crm/v3/objects/companies/{ids[0]}", params={"properties": "name"},
        )
        return (company.get("properties") or {}).get("name") or None

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": "HubSpot",
            "configured": self.is_configured,
            "features": ["pipelines", "deals", "line_items", "contacts", "companies"],
        }
