from __future__ import annotations

import logging
from typing import Any

import httpx

from variant_forge.config import settings
from variant_forge.errors import RemoteCallError
from variant_forge.providers.base import MetafieldWrite, PlatformVariant

logger = logging.getLogger(__name__)

PRODUCT_VARIANTS_QUERY = """
query GetProductVariants($id: ID!, $after: String) {
  product(id: $id) {
    variants(first: 100, after: $after) {
      pageInfo { hasNextPage endCursor }
      edges {
        node {
          id
          title
          image { url }
          selectedOptions { name value }
        }
      }
    }
  }
}
"""

VARIANT_QUERY = """
query GetVariant($id: ID!) {
  productVariant(id: $id) {
    id
    title
    image { url }
    selectedOptions { name value }
  }
}
"""

METAFIELDS_SET_MUTATION = """
mutation MetafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { id namespace key value }
    userErrors { field message code }
  }
}
"""


class ShopifyProvider:
    name = "shopify"

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = f"https://{shop_domain}/admin/api/{api_version or settings.shopify_api_version}/graphql.json"
        self._headers = {"X-Shopify-Access-Token": access_token, "Content-Type": "application/json"}
        self._timeout = httpx.Timeout(timeout if timeout is not None else settings.remote_timeout_seconds)
        self._transport = transport

    async def list_product_variants(self, product_id: str) -> list[PlatformVariant]:
        out: list[PlatformVariant] = []
        after: str | None = None
        while True:
            data = await self._graphql(PRODUCT_VARIANTS_QUERY, {"id": product_id, "after": after})
            product = data.get("product")
            if product is None:
                raise RemoteCallError(f"product {product_id} not found")
            connection = product.get("variants") or {}
            for edge in connection.get("edges") or []:
                out.append(_variant_from_node(edge.get("node") or {}))
            page = connection.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                return out
            after = page.get("endCursor")

    async def get_variant(self, variant_id: str) -> PlatformVariant | None:
        data = await self._graphql(VARIANT_QUERY, {"id": variant_id})
        node = data.get("productVariant")
        return _variant_from_node(node) if node else None

    async def set_metafield(self, write: MetafieldWrite) -> None:
        data = await self._graphql(
            METAFIELDS_SET_MUTATION,
            {
                "metafields": [
                    {
                        "ownerId": write.owner_id,
                        "namespace": write.namespace,
                        "key": write.key,
                        "value": write.value,
                        "type": write.type,
                    }
                ]
            },
        )
        result = data.get("metafieldsSet") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            messages = "; ".join(str(e.get("message")) for e in user_errors)
            raise RemoteCallError(f"metafieldsSet rejected for {write.owner_id}: {messages}")

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self.endpoint, json={"query": query, "variables": variables}, headers=self._headers)
                resp.raise_for_status()
                payload = resp.json()
        except httpx.TimeoutException as exc:
            raise RemoteCallError(f"Shopify request timed out after {self._timeout.read}s") from exc
        except httpx.HTTPStatusError as exc:
            raise RemoteCallError(f"Shopify returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise RemoteCallError(f"Shopify request failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteCallError("Shopify returned a non-JSON body") from exc

        if payload.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in payload["errors"])
            raise RemoteCallError(f"Shopify GraphQL error: {messages}")
        return payload.get("data") or {}


def _variant_from_node(node: dict[str, Any]) -> PlatformVariant:
    options = {
        str(opt.get("name", "")): str(opt.get("value", ""))
        for opt in node.get("selectedOptions") or []
        if opt.get("name")
    }
    image = node.get("image") or {}
    return PlatformVariant(
        variant_id=str(node.get("id", "")),
        title=str(node.get("title", "")),
        image_url=image.get("url"),
        options=options,
    )
