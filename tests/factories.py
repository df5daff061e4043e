"""HubSpot-shaped test data: a pipeline, raw deals, a fake client and a fixed clock."""

import json
from datetime import datetime, timezone

NOW = datetime(2024, 3, 15, 15, 0, tzinfo=timezone.utc)  # 12:00 in Buenos Aires

PIPELINE = {
    "id": "default",
    "label": "Ventas",
    "stages": [
        {"id": "won", "label": "Cierre ganado", "displayOrder": 3,
         "metadata": {"probability": "1.0", "isClosed": "true"}},
        {"id": "s1", "label": "Contacto inicial", "displayOrder": 0,
         "metadata": {"probability": "0.1", "isClosed": "false"}},
        {"id": "s2", "label": "Envío de presupuesto", "displayOrder": 1,
         "metadata": {"probability": "0.3", "isClosed": "false"}},
        {"id": "s3", "label": "Confirmado/Orden recibida", "displayOrder": 2,
         "metadata": {"probability": "0.9", "isClosed": "false"}},
        {"id": "lost", "label": "Cierre perdido", "displayOrder": 4,
         "metadata": {"probability": "0.0", "isClosed": "true"}},
    ],
}


def raw_deal(deal_id, stage="s1", amount=None, created="2024-03-01T12:00:00Z",
             closed=None, items=None, **props):
    """HubSpot search-API shaped deal."""
    properties = {
        "dealname": f"Deal {deal_id}",
        "dealstage": stage,
        "pipeline": "default",
        "createdate": created,
        "hs_object_id": str(deal_id),
    }
    if amount is not None:
        properties["amount"] = str(amount)
    if closed is not None:
        properties["closedate"] = closed
    if items is not None:
        properties["mp_items_json"] = json.dumps(items)
    properties.update(props)
    return {"id": str(deal_id), "properties": properties}


def box_item(length=400, width=300, height=150, quantity=100, price=500, style="Aleta simple"):
    """mp_items_json entry; the default box is 0.648 m2 per unit."""
    return {
        "name": f"Caja {length}x{width}x{height}",
        "quantity": quantity,
        "price": price,
        "mp_largo_mm": length,
        "mp_ancho_mm": width,
        "mp_alto_mm": height,
        "mp_tipo_caja": style,
        "mp_calidad": "C-15",
    }


def hubspot_line_item(item_id, deal_id, quantity=10):
    """Line item as returned by the batch read, tagged with its deal."""
    return {
        "id": item_id,
        "deal_id": deal_id,
        "properties": {
            "name": "Caja 400x300x150",
            "quantity": str(quantity),
            "price": "500",
            "mp_largo_mm": "400",
            "mp_ancho_mm": "300",
            "mp_alto_mm": "150",
            "mp_tipo_caja": "Aleta simple",
        },
    }


class FakeHubSpot:
    """Async stand-in for HubSpotIntegration with canned pipeline data."""

    def __init__(self, deals=None, line_items=None, companies=None, associations=None,
                 fail_with=None, is_configured=True):
        self.deals = deals or []
        self.line_items = line_items or {}
        self.companies = companies or {}
        self.associations = associations or {}
        self.fail_with = fail_with
        self.is_configured = is_configured
        self.deal_calls = []
        self.company_calls = []

    async def get_pipeline(self, pipeline_id):
        if self.fail_with:
            raise self.fail_with
        return json.loads(json.dumps(PIPELINE))

    async def get_all_deals(self, pipeline_id, stage_ids=None, created_after=None, max_pages=100):
        self.deal_calls.append((pipeline_id, stage_ids, created_after))
        return self.deals

    async def get_line_items(self, deal_id):
        return self.line_items.get(deal_id, [])

    async def get_deal_associations(self, deal_id):
        found = self.associations.get(deal_id, {})
        return {"contacts": list(found.get("contacts", [])), "companies": list(found.get("companies", []))}

    async def get_deal_company_name(self, deal_id, company_ids=None):
        self.company_calls.append((deal_id, company_ids))
        return self.companies.get(deal_id)
