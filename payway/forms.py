from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from django import forms

from .errors import InvalidPayload


@dataclass(frozen=True)
class CallbackPayload:
    """A pushback that passed form validation. Raw strings are kept for hashing."""

    tran_id: str
    status_code: int
    approved_amount: Decimal
    raw_status: str
    raw_apv: str
    merchant_id: str
    received_hash: str
    extra: dict = field(default_factory=dict)

    def audit_fields(self) -> dict:
        return {
            "tran_id": self.tran_id,
            "status": self.raw_status,
            "apv": self.raw_apv,
            "merchant_id": self.merchant_id,
            "hash": self.received_hash,
            **self.extra,
        }


class CallbackForm(forms.Form):
    """Form-encoded pushback from ABA PayWay."""

    tran_id = forms.CharField(max_length=20, strip=False)
    status = forms.CharField(max_length=8, strip=False)
    apv = forms.CharField(max_length=32, strip=False, required=False)
    merchant_id = forms.CharField(max_length=64, strip=False, required=False)
    hash = forms.CharField(max_length=256)

    def clean_status(self):
        value = self.cleaned_data["status"]
        try:
            int(value)
        except ValueError:
            raise forms.ValidationError("status must be an integer code")
        return value

    def clean_apv(self):
        value = self.cleaned_data.get("apv") or ""
        if value:
            try:
                amount = Decimal(value)
            except InvalidOperation:
                raise forms.ValidationError("apv must be a decimal amount")
            if not amount.is_finite():
                raise forms.ValidationError("apv must be a decimal amount")
        return value

    def to_payload(self) -> CallbackPayload:
        data = self.cleaned_data
        known = set(self.fields)
        extra = {k: v for k, v in self.data.items() if k not in known}
        return CallbackPayload(
            tran_id=data["tran_id"],
            status_code=int(data["status"]),
            approved_amount=Decimal(data["apv"] or "0"),
            raw_status=data["status"],
            raw_apv=data["apv"],
            merchant_id=data.get("merchant_id") or "",
            received_hash=data["hash"],
            extra=extra,
        )


def parse_callback(data) -> CallbackPayload:
    form = CallbackForm(data)
    if not form.is_valid():
        raise InvalidPayload(fields=sorted(form.errors))
    return form.to_payload()
