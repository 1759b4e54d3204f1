"""
QuickBooks Accounting API Gateway

Every call to the QuickBooks REST API goes through QuickBooksClient.request():
1. wait for a slot in the shared sliding window
2. ask the token manager for a fresh, valid connection
3. perform the call and normalize structured faults into RemoteFault

Transport errors (httpx.HTTPError) propagate unchanged.
"""

import asyncio
import httpx
import logging
from typing import Dict, Any, List, Optional

from sqlalchemy.orm import Session

from ledgersync.config import get_settings
from .auth_service import TokenManager
from .errors import AuthError, QuickBooksError, RemoteFault
from .rate_limiter import SlidingWindowRateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

API_BASE_URLS = {
    'production': "https://quickbooks.api.intuit.com",
    'sandbox': "https://sandbox-quickbooks.api.intuit.com",
}

QUERY_PAGE_SIZE = 1000

# Create endpoints and the key the created entity comes back under
ENTITY_ENDPOINTS = {
    'vendor': 'Vendor',
    'customer': 'Customer',
    'purchase': 'Purchase',
    'deposit': 'Deposit',
    'journalentry': 'JournalEntry',
}


class QuickBooksClient:
    """
    Rate-limited QuickBooks Online API client.

    Instances are cheap and per-request; the rate limiter they share is not.
    """

    def __init__(
        self,
        db: Session,
        token_manager: Optional[TokenManager] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.db = db
        self.settings = get_settings()
        self.token_manager = token_manager or TokenManager(db)
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.transport = transport
        self.environment = self.settings.quickbooks_environment
        self.base_url = API_BASE_URLS.get(self.environment, API_BASE_URLS['sandbox'])

    async def request(
        self,
        user_id: int,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Perform one API call for the user's active company.

        Args:
            user_id: Local user id
            method: HTTP method
            path: Path below /v3/company/{realm}/; "{realm_id}" is substituted
            json: Request body
            params: Query parameters (minorversion is added)

        Returns:
            Decoded JSON response

        Raises:
            AuthError: No active connection, or the token was rejected
            RemoteFault: QuickBooks returned a structured fault
            httpx.HTTPError: Transport failure
        """
        await self.rate_limiter.wait_if_needed()

        connection = await self.token_manager.get_valid_connection(user_id)
        if connection is None:
            raise AuthError("No active QuickBooks connection found")

        access_token = self.token_manager.get_access_token(connection)
        realm_id = connection.company_id
        path = path.lstrip('/').replace('{realm_id}', realm_id)
        url = f"{self.base_url}/v3/company/{realm_id}/{path}"

        query_params = dict(params or {})
        query_params.setdefault('minorversion', self.settings.quickbooks_minor_version)

        async with httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds,
            transport=self.transport
        ) as client:
            response = await client.request(
                method,
                url,
                json=json,
                params=query_params,
                headers={
                    'Authorization': f'Bearer {access_token}',
                    'Accept': 'application/json',
                    'Content-Type': 'application/json'
                }
            )

        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code == 401:
            raise AuthError("QuickBooks rejected the access token. Please reconnect.")

        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            fault = data.get('Fault') or data.get('fault')
            if fault:
                errors = fault.get('Error') or fault.get('error') or [{}]
                first = errors[0]
                code = first.get('code')
                message = first.get('Message') or first.get('message') or 'Unknown error'
                detail = first.get('Detail') or first.get('detail')
                logger.warning(f"QuickBooks fault {code}: {message} ({detail})")
                raise RemoteFault(
                    str(code) if code is not None else None,
                    message,
                    detail=detail,
                    status_code=response.status_code,
                    raw=fault
                )

        if response.status_code >= 400 or data is None:
            raise RemoteFault(
                str(response.status_code),
                response.text or response.reason_phrase,
                status_code=response.status_code
            )

        return data

    # Reads

    async def query(
        self,
        user_id: int,
        entity: str,
        where: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Run a QuickBooks query, following STARTPOSITION pages until exhausted."""
        results = []
        start = 1
        while True:
            statement = f"SELECT * FROM {entity}"
            if where:
                statement += f" WHERE {where}"
            statement += f" STARTPOSITION {start} MAXRESULTS {QUERY_PAGE_SIZE}"

            data = await self.request(user_id, 'GET', 'query', params={'query': statement})
            rows = data.get('QueryResponse', {}).get(entity, [])
            results.extend(rows)

            if len(rows) < QUERY_PAGE_SIZE:
                return results
            start += QUERY_PAGE_SIZE

    async def fetch_accounts(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.query(user_id, 'Account', "Active = true")

    async def fetch_vendors(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.query(user_id, 'Vendor', "Active = true")

    async def fetch_customers(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.query(user_id, 'Customer', "Active = true")

    async def get_company_info(self, user_id: int) -> Dict[str, Any]:
        data = await self.request(user_id, 'GET', 'companyinfo/{realm_id}')
        return data.get('CompanyInfo', {})

    # Writes

    async def _create(self, user_id: int, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.request(user_id, 'POST', endpoint, json=payload)
        return data.get(ENTITY_ENDPOINTS[endpoint], data)

    async def create_vendor(self, user_id: int, vendor_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._create(user_id, 'vendor', vendor_data)

    async def create_customer(self, user_id: int, customer_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._create(user_id, 'customer', customer_data)

    async def create_purchase(self, user_id: int, purchase_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._create(user_id, 'purchase', purchase_data)

    async def create_deposit(self, user_id: int, deposit_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._create(user_id, 'deposit', deposit_data)

    async def create_journal_entry(self, user_id: int, entry_data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._create(user_id, 'journalentry', entry_data)

    async def create_transaction(self, user_id: int, txn_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if txn_type == 'purchase':
            return await self.create_purchase(user_id, data)
        elif txn_type == 'deposit':
            return await self.create_deposit(user_id, data)
        elif txn_type == 'journal_entry':
            return await self.create_journal_entry(user_id, data)
        raise ValueError(f"Unknown transaction type: {txn_type}")

    async def create_transactions_batch(
        self,
        user_id: int,
        items: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """
        Post one batch of converted transactions concurrently.

        Each item is isolated: a fault on one does not affect the others.

        Args:
            items: [{'type': 'purchase'|'deposit', 'data': payload}, ...]

        Returns:
            One result per item, in input order:
            {'success': True, 'result': entity} or
            {'success': False, 'error': str, 'auth_error': bool}
        """
        async def post_one(item):
            try:
                result = await self.create_transaction(user_id, item['type'], item['data'])
                return {'success': True, 'type': item['type'], 'result': result}
            except (QuickBooksError, httpx.HTTPError, ValueError) as e:
                return {
                    'success': False,
                    'type': item['type'],
                    'error': str(e),
                    'auth_error': isinstance(e, AuthError),
                }

        return list(await asyncio.gather(*(post_one(item) for item in items)))

    async def test_connection(self, user_id: int) -> Dict[str, Any]:
        try:
            info = await self.get_company_info(user_id)
        except (QuickBooksError, httpx.HTTPError) as e:
            return {'success': False, 'error': str(e)}

        return {
            'success': True,
            'company_name': info.get('CompanyName'),
            'company_id': info.get('Id'),
        }
