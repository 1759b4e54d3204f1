"""
AI mapping suggestions for QuickBooks accounts, vendors and customers.

The language model is treated as a typed, best-effort RPC: its reply must
deserialize into a list of CategorySuggestion / MerchantSuggestion. Anything
else (timeout, HTTP error, prose, broken JSON, wrong shape) yields an empty
list so that callers fall back to manual mapping.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError as PydanticValidationError

from ledgersync.config import get_settings
from ledgersync.app.models import MerchantMappingType

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    'anthropic': 'claude-3-7-sonnet-20250219',
    'openai': 'gpt-4o',
}

MAX_ENTITIES_IN_PROMPT = 100


class CategorySuggestion(BaseModel):
    category: str
    subcategory: Optional[str] = None
    qb_account_id: Optional[str] = None
    qb_account_name: Optional[str] = None
    qb_account_type: Optional[str] = None
    confidence: float = Field(..., ge=0, le=100)
    reasoning: str = ""
    create_new_account: bool = False

    model_config = ConfigDict(coerce_numbers_to_str=True)


class MerchantSuggestion(BaseModel):
    merchant: str
    mapping_type: MerchantMappingType = MerchantMappingType.VENDOR
    qb_vendor_id: Optional[str] = None
    qb_vendor_name: Optional[str] = None
    qb_customer_id: Optional[str] = None
    qb_customer_name: Optional[str] = None
    confidence: float = Field(..., ge=0, le=100)
    create_new: bool = False
    suggested_name: Optional[str] = None
    reasoning: str = ""

    model_config = ConfigDict(coerce_numbers_to_str=True)


CATEGORY_ADAPTER = TypeAdapter(List[CategorySuggestion])
MERCHANT_ADAPTER = TypeAdapter(List[MerchantSuggestion])

S = TypeVar('S', CategorySuggestion, MerchantSuggestion)


def rank_suggestions(suggestions: Sequence[S], key) -> List[S]:
    """Keep the highest-confidence suggestion per key, best first."""
    best: Dict[Any, S] = {}
    for suggestion in suggestions:
        k = key(suggestion)
        if k not in best or suggestion.confidence > best[k].confidence:
            best[k] = suggestion
    return sorted(best.values(), key=lambda s: s.confidence, reverse=True)


def strip_code_fences(content: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    content = content.strip()
    if content.startswith('```'):
        lines = content.split('\n')
        lines = lines[1:]
        if lines and lines[-1].strip() == '```':
            lines = lines[:-1]
        content = '\n'.join(lines)
    return content.strip()


class MappingOracle:
    """
    Client for the configured AI provider (Anthropic or OpenAI).

    Example:
        >>> oracle = MappingOracle()
        >>> suggestions = await oracle.suggest_category_mappings(
        ...     [{'category': 'Groceries', 'subcategory': None}], accounts
        ... )
        >>> suggestions[0].qb_account_id
        '64'
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        settings = get_settings()
        self.provider = provider or settings.ai_provider
        self.api_key = api_key if api_key is not None else settings.ai_api_key
        self.model = model or settings.ai_model or DEFAULT_MODELS.get(self.provider)
        self.max_tokens = settings.ai_max_tokens
        self.temperature = settings.ai_temperature
        self.timeout = settings.ai_timeout_seconds
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and self.provider in DEFAULT_MODELS

    async def suggest_category_mappings(
        self,
        categories: List[Dict[str, Optional[str]]],
        accounts: List[Dict[str, Any]]
    ) -> List[CategorySuggestion]:
        """
        Ask for the best QuickBooks account per local category.

        Args:
            categories: [{'category': str, 'subcategory': str | None}, ...]
            accounts: QuickBooks Account entities already filtered to candidates

        Returns:
            Ranked suggestions, or [] when the oracle is unavailable or replies badly
        """
        if not categories:
            return []

        prompt = self._build_category_prompt(categories, accounts)
        content = await self._complete(prompt)
        suggestions = self._parse(content, CATEGORY_ADAPTER)
        return rank_suggestions(suggestions, key=lambda s: (s.category, s.subcategory))

    async def suggest_merchant_mappings(
        self,
        merchants: List[str],
        vendors: List[Dict[str, Any]],
        customers: List[Dict[str, Any]]
    ) -> List[MerchantSuggestion]:
        if not merchants:
            return []

        prompt = self._build_merchant_prompt(merchants, vendors, customers)
        content = await self._complete(prompt)
        suggestions = self._parse(content, MERCHANT_ADAPTER)
        return rank_suggestions(suggestions, key=lambda s: s.merchant)

    def _build_category_prompt(self, categories, accounts) -> str:
        category_lines = []
        for i, item in enumerate(categories, 1):
            label = item['category']
            if item.get('subcategory'):
                label += f" / {item['subcategory']}"
            category_lines.append(f"{i}. {label}")

        account_lines = [
            f"- {acc.get('Name')} (Type: {acc.get('AccountType')}, ID: {acc.get('Id')})"
            for acc in accounts
        ]

        return f"""You map bank statement categories to a QuickBooks chart of accounts.

CATEGORIES (category / subcategory):
{chr(10).join(category_lines)}

QUICKBOOKS ACCOUNTS:
{chr(10).join(account_lines) or '(none)'}

Pick the most specific matching account for each category. Expense categories go to
Expense, Other Expense or Cost of Goods Sold accounts; income categories go to Income
or Other Income accounts. Score each match 0-100. If nothing fits, set
create_new_account to true and leave qb_account_id null.

Respond with a JSON array only:
[
  {{
    "category": "Groceries",
    "subcategory": null,
    "qb_account_id": "64",
    "qb_account_name": "Supplies",
    "qb_account_type": "Expense",
    "confidence": 92,
    "reasoning": "short explanation",
    "create_new_account": false
  }}
]"""

    def _build_merchant_prompt(self, merchants, vendors, customers) -> str:
        merchant_lines = [f"{i}. {m}" for i, m in enumerate(merchants, 1)]
        vendor_lines = [f"- {v.get('DisplayName')} (ID: {v.get('Id')})" for v in vendors[:MAX_ENTITIES_IN_PROMPT]]
        customer_lines = [f"- {c.get('DisplayName')} (ID: {c.get('Id')})" for c in customers[:MAX_ENTITIES_IN_PROMPT]]

        return f"""You match merchant names from bank statements to QuickBooks vendors and customers.

MERCHANTS:
{chr(10).join(merchant_lines)}

QUICKBOOKS VENDORS:
{chr(10).join(vendor_lines) or '(none)'}

QUICKBOOKS CUSTOMERS:
{chr(10).join(customer_lines) or '(none)'}

Most merchants are vendors (money paid out). Customers pay money in. Match loosely
("WALMART #1234" is "Walmart"). When there is no match set create_new to true and
give a cleaned suggested_name. Score each match 0-100.

Respond with a JSON array only:
[
  {{
    "merchant": "WALMART #1234",
    "mapping_type": "vendor",
    "qb_vendor_id": "12",
    "qb_vendor_name": "Walmart",
    "qb_customer_id": null,
    "qb_customer_name": null,
    "confidence": 85,
    "create_new": false,
    "suggested_name": "Walmart",
    "reasoning": "short explanation"
  }}
]"""

    async def _complete(self, prompt: str) -> Optional[str]:
        """Send one prompt; None on any transport or provider failure."""
        if not self.is_configured:
            logger.warning("AI mapping oracle is not configured, skipping suggestions")
            return None

        try:
            if self.provider == 'anthropic':
                return await self._call_anthropic_text(prompt)
            return await self._call_openai_text(prompt)
        except httpx.HTTPError as e:
            logger.warning(f"AI mapping request failed: {e}")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"AI mapping response had unexpected shape: {e}")
        return None

    def _parse(self, content: Optional[str], adapter: TypeAdapter) -> list:
        if not content:
            return []

        try:
            data = json.loads(strip_code_fences(content))
            return adapter.validate_python(data)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"AI mapping response rejected: {e}")
            return []

    async def _call_openai_text(self, prompt: str) -> str:
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json'
        }

        payload = {
            'model': self.model,
            'messages': [
                {'role': 'user', 'content': prompt}
            ],
            'max_tokens': self.max_tokens,
            'temperature': float(self.temperature)
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                'https://api.openai.com/v1/chat/completions',
                headers=headers,
                json=payload
            )
            response.raise_for_status()
            data = response.json()

        return data['choices'][0]['message']['content']

    async def _call_anthropic_text(self, prompt: str) -> str:
        headers = {
            'x-api-key': self.api_key,
            'anthropic-version': '2023-06-01',
            'Content-Type': 'application/json'
        }

        payload = {
            'model': self.model,
            'max_tokens': self.max_tokens,
            'temperature': float(self.temperature),
            'messages': [
                {'role': 'user', 'content': prompt}
            ]
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                'https://api.anthropic.com/v1/messages',
                headers=headers,
                json=payload
            )
            response.raise_for_status()
            data = response.json()

        return data['content'][0]['text']
