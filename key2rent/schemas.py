from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from key2rent.errors import MetadataError


class StkPushRequest(BaseModel):
    # Everything optional: the endpoint validates in its own order
    model_config = ConfigDict(populate_by_name=True)

    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    amount: Optional[float] = Field(None, allow_inf_nan=False)
    type: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")
    user_email: Optional[str] = Field(None, alias="userEmail")
    user_name: Optional[str] = Field(None, alias="userName")
    listing_id: Optional[str] = Field(None, alias="listingId")


class CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Optional[Union[int, float, str]] = Field(None, alias="Value")


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")

    def value(self, name: str) -> Any:
        for item in self.items:
            if item.name == name:
                return item.value
        raise MetadataError(f"Callback metadata has no {name}")


class StkCallback(BaseModel):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    @property
    def is_success(self) -> bool:
        return self.result_code == 0

    def receipt_number(self) -> str:
        if self.callback_metadata is None:
            raise MetadataError("Callback has no CallbackMetadata")
        value = self.callback_metadata.value("MpesaReceiptNumber")
        if value in (None, ""):
            raise MetadataError("Callback metadata has an empty MpesaReceiptNumber")
        return str(value)


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(alias="stkCallback")


class StkCallbackPayload(BaseModel):
    body: CallbackBody = Field(alias="Body")


class FeatureToggleRequest(BaseModel):
    enabled: bool


class FeaturePriceRequest(BaseModel):
    amount: int
