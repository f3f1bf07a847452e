from types import MappingProxyType
from typing import Annotated, Any, List, Literal, Mapping, Optional, Type

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationInfo, field_validator

DATE_TIME = r"^\d{14}$"  # YYYYMMDDHHmmss
DATE = r"^\d{8}$"  # YYYYMMDD
DATE_OR_DATE_TIME = r"^(.{8}|.{14})$"

YesNo = Literal["Y", "N"]


def _number_to_str(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


# Trader invoice numbers arrive as either strings or numbers from POS systems
TraderInvoiceNo = Annotated[str, BeforeValidator(_number_to_str), Field(min_length=1, max_length=50)]


def _reject_bool(value: Any) -> Any:
    # bool is an int subclass, so lax mode would otherwise read True as 1
    if isinstance(value, bool):
        raise ValueError("must be a number, not a boolean")
    return value


Number = Annotated[float, BeforeValidator(_reject_bool)]
Integer = Annotated[int, BeforeValidator(_reject_bool)]


class BaseSchema(BaseModel):
    """Closed-world schema: undeclared fields are rejected."""
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False)


class PassthroughSchema(BaseSchema):
    """Undeclared fields are kept as sent. Fields typed `Any` are never checked."""
    model_config = ConfigDict(extra="allow", allow_inf_nan=False)


# --- Initialization ---

class Initialization(BaseSchema):
    tin: str = Field(..., min_length=1, max_length=20, description="Taxpayer Identification Number")
    bhfId: str = Field(..., min_length=1, max_length=10, description="Branch ID")
    dvcSrlNo: str = Field(..., min_length=1, max_length=50, description="Device Serial Number")


# --- Lookups ---

class LastRequestOnly(BaseSchema):
    lastReqDt: str = Field(..., pattern=DATE_TIME, description="Last Request Date (YYYYMMDDHHmmss)")


class SelectCustomer(BaseSchema):
    custmTin: str = Field(..., min_length=1, max_length=20)


# --- Customer / Branch ---

class SaveBranchCustomer(BaseSchema):
    custNo: str = Field(..., min_length=1)
    custTin: str = Field(..., min_length=1, max_length=20)
    custNm: str = Field(..., min_length=1)
    useYn: YesNo
    regrId: str = Field(..., min_length=1)
    regrNm: str = Field(..., min_length=1)
    modrId: Optional[str] = Field(None, min_length=1)
    modrNm: Optional[str] = Field(None, min_length=1)


class SaveBranchUser(BaseSchema):
    userId: str = Field(..., min_length=1)
    userNm: str = Field(..., min_length=1)
    pwd: str = Field(..., min_length=1)
    useYn: YesNo
    regrId: str = Field(..., min_length=1)
    regrNm: str = Field(..., min_length=1)
    modrId: Optional[str] = Field(None, min_length=1)
    modrNm: Optional[str] = Field(None, min_length=1)


class SaveBranchInsurance(BaseSchema):
    isrccCd: str = Field(..., min_length=1)
    isrccNm: str = Field(..., min_length=1)
    isrcRt: Number = Field(..., ge=0)
    useYn: YesNo
    regrId: str = Field(..., min_length=1)
    regrNm: str = Field(..., min_length=1)
    modrId: Optional[str] = Field(None, min_length=1)
    modrNm: Optional[str] = Field(None, min_length=1)


# --- Item ---

class SaveItem(BaseSchema):
    itemCd: str = Field(..., min_length=1)
    itemClsCd: str = Field(..., min_length=1)
    itemTyCd: str = Field(..., min_length=1)
    itemNm: str = Field(..., min_length=1)
    itemStdNm: Optional[str] = Field(None, min_length=1)
    orgnNatCd: str = Field(..., min_length=2, max_length=5)
    pkgUnitCd: str = Field(..., min_length=1)
    qtyUnitCd: str = Field(..., min_length=1)
    taxTyCd: str = Field(..., min_length=1)
    dftPrc: Number = Field(..., ge=0, description="Default unit price")
    grpPrcL1: Optional[Number] = None
    grpPrcL2: Optional[Number] = None
    grpPrcL3: Optional[Number] = None
    grpPrcL4: Optional[Number] = None
    grpPrcL5: Optional[Number] = None
    btchNo: Optional[str] = Field(None, min_length=1)
    bcd: Optional[str] = Field(None, min_length=1)
    addInfo: Optional[str] = Field(None, min_length=1)
    sftyQty: Optional[Number] = None
    isrcAplcbYn: YesNo
    useYn: YesNo
    regrId: str = Field(..., min_length=1)
    regrNm: str = Field(..., min_length=1)
    modrId: str = Field(..., min_length=1)
    modrNm: str = Field(..., min_length=1)


class SaveItemComposition(BaseSchema):
    itemCd: str = Field(..., min_length=1)
    cpstItemCd: str = Field(..., min_length=1)
    cpstQty: Number = Field(..., ge=0.001)
    regrId: str = Field(..., min_length=1)
    regrNm: str = Field(..., min_length=1)
    modrId: Optional[str] = Field(None, min_length=1)
    modrNm: Optional[str] = Field(None, min_length=1)


class UpdateImportItem(BaseSchema):
    taskCd: str = Field(..., min_length=1)
    dclDe: str = Field(..., min_length=8, max_length=14, description="Declaration date")
    itemSeq: Integer = Field(..., ge=1)
    hsCd: str = Field(..., min_length=1, max_length=17)
    itemClsCd: str = Field(..., min_length=1, max_length=10)
    itemCd: str = Field(..., min_length=1, max_length=20)
    imptItemSttsCd: str = Field(..., min_length=1)
    modrId: str = Field(..., min_length=1)
    modrNm: str = Field(..., min_length=1)
    remark: Optional[str] = Field(None, min_length=1)


# --- Transactions ---

class TaxTotals(BaseSchema):
    """Per tax-type breakdown (A-E) shared by sales and purchases."""
    taxblAmtA: Number
    taxblAmtB: Number
    taxblAmtC: Number
    taxblAmtD: Number
    taxblAmtE: Number
    taxRtA: Number
    taxRtB: Number
    taxRtC: Number
    taxRtD: Number
    taxRtE: Number
    taxAmtA: Number
    taxAmtB: Number
    taxAmtC: Number
    taxAmtD: Number
    taxAmtE: Number
    totTaxblAmt: Number
    totTaxAmt: Number
    totAmt: Number


class Receipt(BaseSchema):
    custTin: Optional[str] = Field(None, min_length=11, max_length=11)
    custMblNo: Optional[str] = Field(None, min_length=1, max_length=20)
    rcptPbctDt: str = Field(..., pattern=DATE_TIME, description="Receipt publication date")
    trdeNm: Optional[str] = Field(None, min_length=1, max_length=20)
    adrs: Optional[str] = Field(None, min_length=1, max_length=200)
    topMsg: Optional[str] = Field(None, min_length=1, max_length=20)
    btmMsg: Optional[str] = Field(None, min_length=1, max_length=20)
    prchrAcptcYn: YesNo


class SalesItem(BaseSchema):
    itemSeq: Integer = Field(..., ge=1)
    itemCd: str = Field(..., min_length=1, max_length=20)
    itemClsCd: Optional[str] = Field(None, min_length=1, max_length=10)
    itemNm: str = Field(..., min_length=1, max_length=200)
    bcd: Optional[str] = Field(None, min_length=1, max_length=20)
    pkgUnitCd: str = Field(..., min_length=1, max_length=5)
    pkg: Number
    qtyUnitCd: str = Field(..., min_length=1, max_length=5)
    qty: Number
    prc: Number
    splyAmt: Number
    dcRt: Number
    dcAmt: Number
    isrccCd: Optional[str] = Field(None, min_length=1, max_length=10)
    isrccNm: Optional[str] = Field(None, min_length=1, max_length=100)
    isrcRt: Optional[Number] = None
    isrcAmt: Optional[Number] = None
    taxTyCd: str = Field(..., min_length=1, max_length=5)
    taxblAmt: Number
    taxAmt: Number
    totAmt: Number


class SaveSalesTransaction(TaxTotals):
    tin: str = Field(..., min_length=11, max_length=11)
    bhfId: str = Field(..., min_length=2, max_length=2)
    cmcKey: str = Field(..., min_length=1, max_length=255, description="Communication Key")
    trdInvcNo: TraderInvoiceNo
    invcNo: Integer = Field(..., ge=0)
    orgInvcNo: Integer = Field(..., ge=0, description="Original invoice number, 0 for a new sale")
    custTin: Optional[str] = Field(None, min_length=11, max_length=11)
    custNm: Optional[str] = Field(None, min_length=1, max_length=60)
    rcptTyCd: str = Field(..., min_length=1, max_length=5, description="S = sale, R = credit note")
    pmtTyCd: Optional[str] = Field(None, min_length=1, max_length=5)
    salesSttsCd: str = Field(..., min_length=1, max_length=5)
    cfmDt: str = Field(..., pattern=DATE_TIME)
    salesDt: str = Field(..., pattern=DATE)
    stockRlsDt: Optional[str] = Field(None, pattern=DATE_TIME)
    cnclReqDt: Optional[str] = Field(None, pattern=DATE_TIME)
    cnclDt: Optional[str] = Field(None, pattern=DATE_TIME)
    rfdDt: Optional[str] = Field(None, pattern=DATE_TIME)
    rfdRsnCd: Optional[str] = Field(None, min_length=1, max_length=5, validate_default=True)
    totItemCnt: Integer = Field(..., ge=1)
    prchrAcptcYn: YesNo
    remark: Optional[str] = Field(None, min_length=1, max_length=400)
    regrId: str = Field(..., min_length=1, max_length=20)
    regrNm: str = Field(..., min_length=1, max_length=60)
    modrId: str = Field(..., min_length=1, max_length=20)
    modrNm: str = Field(..., min_length=1, max_length=60)
    receipt: Receipt
    itemList: List[SalesItem] = Field(..., min_length=1)

    # rcptTyCd is declared above, so info.data holds it whenever it validated
    @field_validator("rfdRsnCd")
    @classmethod
    def validate_credit_note(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if info.data.get("rcptTyCd") == "R" and not value:
            raise ValueError("required when rcptTyCd is R (credit note)")
        return value


class PurchaseItem(BaseSchema):
    itemSeq: Integer = Field(..., ge=1)
    itemCd: str = Field(..., min_length=1, max_length=20)
    itemClsCd: str = Field(..., min_length=1, max_length=10)
    itemNm: str = Field(..., min_length=1, max_length=200)
    bcd: Optional[str] = Field(None, min_length=1, max_length=20)
    spplrItemClsCd: Optional[str] = Field(None, min_length=1, max_length=10)
    spplrItemCd: Optional[str] = Field(None, min_length=1, max_length=20)
    spplrItemNm: Optional[str] = Field(None, min_length=1, max_length=200)
    pkgUnitCd: str = Field(..., min_length=1, max_length=5)
    pkg: Integer
    qtyUnitCd: str = Field(..., min_length=1, max_length=5)
    qty: Integer
    prc: Number
    splyAmt: Number
    dcRt: Number
    dcAmt: Number
    taxblAmt: Number
    taxTyCd: str = Field(..., min_length=1, max_length=5)
    taxAmt: Number
    totAmt: Number
    itemExprDt: Optional[str] = Field(None, pattern=DATE_OR_DATE_TIME)


class SavePurchase(TaxTotals):
    spplrTin: Optional[str] = Field(None, min_length=11, max_length=11)
    invcNo: Integer = Field(..., ge=0)
    orgInvcNo: Integer = Field(..., ge=0)
    spplrBhfId: Optional[str] = Field(None, min_length=2, max_length=2)
    spplrNm: Optional[str] = Field(None, min_length=1, max_length=60)
    spplrInvcNo: Optional[Integer] = Field(None, ge=0)
    regTyCd: str = Field(..., min_length=1, max_length=5)
    pchsTyCd: str = Field(..., min_length=1, max_length=5)
    rcptTyCd: str = Field(..., min_length=1, max_length=5)
    pmtTyCd: str = Field(..., min_length=1, max_length=5)
    pchsSttsCd: str = Field(..., min_length=1, max_length=5)
    cfmDt: Optional[str] = Field(None, pattern=DATE_OR_DATE_TIME)
    pchsDt: Optional[str] = Field(None, pattern=DATE_OR_DATE_TIME)
    wrhsDt: Optional[str] = Field(None, pattern=DATE_OR_DATE_TIME)
    cnclReqDt: Optional[str] = Field(None, pattern=DATE_OR_DATE_TIME)
    cnclDt: Optional[str] = Field(None, pattern=DATE_OR_DATE_TIME)
    rfdDt: Optional[str] = Field(None, pattern=DATE_OR_DATE_TIME)
    totItemCnt: Integer = Field(..., ge=0)
    remark: Optional[str] = Field(None, min_length=1, max_length=400)
    regrId: str = Field(..., min_length=1, max_length=20)
    regrNm: str = Field(..., min_length=1, max_length=60)
    modrId: str = Field(..., min_length=1, max_length=20)
    modrNm: str = Field(..., min_length=1, max_length=60)
    itemList: List[PurchaseItem] = Field(..., min_length=1)


# --- Stock ---

class StockIOItem(BaseSchema):
    itemSeq: Integer = Field(..., ge=1)
    itemCd: str = Field(..., min_length=1, max_length=20)
    itemClsCd: str = Field(..., min_length=1, max_length=10)
    itemNm: str = Field(..., min_length=1, max_length=200)
    bcd: Optional[str] = Field(None, min_length=1, max_length=20)
    pkgUnitCd: str = Field(..., min_length=1, max_length=5)
    pkg: Number
    qtyUnitCd: str = Field(..., min_length=1, max_length=5)
    qty: Number
    itemExprDt: Optional[str] = Field(None, min_length=8, max_length=8)
    prc: Number
    splyAmt: Number
    totDcAmt: Number
    taxblAmt: Number
    taxTyCd: str = Field(..., min_length=1, max_length=5)
    taxAmt: Number
    totAmt: Number


class SaveStockIO(BaseSchema):
    tin: str = Field(..., min_length=11, max_length=11)
    bhfId: str = Field(..., min_length=2, max_length=2)
    sarNo: Integer = Field(..., ge=0, description="Stored and released number")
    orgSarNo: Integer = Field(..., ge=0)
    regTyCd: str = Field(..., min_length=1, max_length=5)
    custTin: Optional[str] = Field(None, min_length=11, max_length=11)
    custNm: Optional[str] = Field(None, min_length=1, max_length=100)
    custBhfId: Optional[str] = Field(None, min_length=2, max_length=2)
    sarTyCd: str = Field(..., min_length=1, max_length=5)
    ocrnDt: str = Field(..., min_length=8, max_length=8, description="Occurrence date (YYYYMMDD)")
    totItemCnt: Integer = Field(..., ge=0)
    totTaxblAmt: Number
    totTaxAmt: Number
    totAmt: Number
    remark: Optional[str] = Field(None, min_length=1, max_length=400)
    regrId: str = Field(..., min_length=1, max_length=20)
    regrNm: str = Field(..., min_length=1, max_length=60)
    modrId: str = Field(..., min_length=1, max_length=20)
    modrNm: str = Field(..., min_length=1, max_length=60)
    itemList: List[StockIOItem] = Field(..., min_length=1)


class SaveStockMaster(BaseSchema):
    itemCd: str = Field(..., min_length=1, max_length=20)
    rsdQty: Number = Field(..., ge=0, description="Remaining stock quantity")
    regrId: str = Field(..., min_length=1)
    regrNm: str = Field(..., min_length=1)
    modrId: str = Field(..., min_length=1)
    modrNm: str = Field(..., min_length=1)


SCHEMAS: Mapping[str, Type[BaseModel]] = MappingProxyType({
    "initialization": Initialization,
    "lastReqOnly": LastRequestOnly,
    "selectCustomer": SelectCustomer,
    "saveBhfCustomer": SaveBranchCustomer,
    "saveBhfUser": SaveBranchUser,
    "saveBhfInsurance": SaveBranchInsurance,
    "saveItem": SaveItem,
    "saveItemComposition": SaveItemComposition,
    "updateImportItem": UpdateImportItem,
    "saveTrnsSalesOsdc": SaveSalesTransaction,
    "insertTrnsPurchase": SavePurchase,
    "insertStockIO": SaveStockIO,
    "saveStockMaster": SaveStockMaster,
})
