import logging
from typing import Any, Dict, Mapping, Optional

import requests

from .auth import TokenProvider
from .config import EtimsConfig
from .exceptions import KRAeTIMSApiError
from .pipeline import RequestPipeline
from .validator import Validator

logger = logging.getLogger(__name__)


def extract_cmc_key(response: Any) -> Optional[str]:
    """Finds cmcKey in the known initialization response shapes."""
    if not isinstance(response, dict):
        return None
    data = response.get("data") if isinstance(response.get("data"), dict) else {}
    info = data.get("info") if isinstance(data.get("info"), dict) else {}
    return response.get("cmcKey") or data.get("cmcKey") or info.get("cmcKey") or None


class KRAeTIMSClient:
    """
    Synchronous SDK for the KRA eTIMS OSCU API.

    Every operation validates its payload locally first, so schema mistakes
    never cost a network round-trip, then submits through the RequestPipeline.
    """

    def __init__(self, config: EtimsConfig, token_provider: Optional[TokenProvider] = None,
                 pipeline: Optional[RequestPipeline] = None, validator: Optional[Validator] = None,
                 session: Optional[requests.Session] = None):
        self.config = config
        # Connection pooling shared by the token and business calls
        self._owns_session = session is None
        self._session = session or requests.Session()
        self.auth = token_provider or TokenProvider(config, session=self._session)
        self.pipeline = pipeline or RequestPipeline(config, self.auth, session=self._session)
        self.validator = validator or Validator()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self) -> None:
        """Closes the session only if this client created it."""
        if self._owns_session:
            self._session.close()

    def with_cmc_key(self, cmc_key: str) -> "KRAeTIMSClient":
        """
        New client bound to a config carrying `cmc_key`.

        The new client borrows this client's token provider and session:
        closing it leaves the session open, closing this client closes it for both.
        """
        return KRAeTIMSClient(
            self.config.with_cmc_key(cmc_key),
            token_provider=self.auth,
            validator=self.validator,
            session=self._session,
        )

    def initialize(self, data: Mapping[str, Any]) -> "KRAeTIMSClient":
        """
        Runs the device initialization handshake and returns a client bound to
        the communication key KRA issued. This client is left unchanged.
        """
        response = self.select_init_osdc_info(data)
        cmc_key = extract_cmc_key(response)
        if not cmc_key:
            raise KRAeTIMSApiError(
                "Initialization succeeded but no cmcKey was returned", status_code=None, response_body=response
            )
        logger.info("Device initialized for tin [%s] branch [%s]", self.config.oscu.tin, self.config.oscu.bhf_id)
        return self.with_cmc_key(cmc_key)

    def _submit(self, endpoint_key: str, schema: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self.pipeline.post(endpoint_key, self.validator.validate(data, schema))

    # --- Initialization ---

    def select_init_osdc_info(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Initialize the device/branch; the response carries cmcKey."""
        return self._submit("selectInitOsdcInfo", "initialization", data)

    # --- Code lists & notices ---

    def select_code_list(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectCodeList", "lastReqOnly", data)

    def select_notice_list(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectNoticeList", "lastReqOnly", data)

    # --- Customer / Branch ---

    def select_customer(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Look up a customer by PIN (custmTin)."""
        return self._submit("selectCustomer", "selectCustomer", data)

    def select_branches(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectBhfList", "lastReqOnly", data)

    def save_branch_customer(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("saveBhfCustomer", "saveBhfCustomer", data)

    def save_branch_user(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("saveBhfUser", "saveBhfUser", data)

    def save_branch_insurance(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("saveBhfInsurance", "saveBhfInsurance", data)

    # --- Item ---

    def select_item_classes(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectItemClsList", "lastReqOnly", data)

    def select_items(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectItemList", "lastReqOnly", data)

    def save_item(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Save or update item master data."""
        return self._submit("saveItem", "saveItem", data)

    def save_item_composition(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("saveItemComposition", "saveItemComposition", data)

    # --- Imported items ---

    def select_imported_items(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectImportItemList", "lastReqOnly", data)

    def update_imported_item(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("updateImportItem", "updateImportItem", data)

    # --- Purchases & sales ---

    def select_purchases(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectTrnsPurchaseSalesList", "lastReqOnly", data)

    def save_purchase(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("insertTrnsPurchase", "insertTrnsPurchase", data)

    def save_sales_transaction(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Submit a sale (rcptTyCd S) or credit note (rcptTyCd R, needs rfdRsnCd)."""
        return self._submit("saveTrnsSalesOsdc", "saveTrnsSalesOsdc", data)

    # --- Stock ---

    def select_stock_movement(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("selectStockMoveList", "lastReqOnly", data)

    def save_stock_io(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Stock in/out movement (adjustment, transfer, loss)."""
        return self._submit("insertStockIO", "insertStockIO", data)

    def save_stock_master(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._submit("saveStockMaster", "saveStockMaster", data)
