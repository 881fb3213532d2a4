"""
Normalize Stripe Connect account sub-objects into the JSON shapes we store.
Inputs are plain dicts (webhook payloads); None in -> None out.
"""
from typing import Any, Optional


def is_record(value: Any) -> bool:
    return isinstance(value, dict)


def is_external_account_list(value: Any) -> bool:
    return is_record(value) and value.get("object") == "list" and isinstance(value.get("data"), list)


def is_bank_account(account: dict) -> bool:
    return account.get("object") == "bank_account"


def is_card(account: dict) -> bool:
    return account.get("object") == "card"


def normalize_address(address: Optional[dict]) -> Optional[dict]:
    if not address:
        return None
    return {
        "line1": address.get("line1"),
        "line2": address.get("line2"),
        "city": address.get("city"),
        "state": address.get("state"),
        "postal_code": address.get("postal_code"),
        "country": address.get("country"),
    }


def normalize_company(company: Optional[dict]) -> Optional[dict]:
    if not company:
        return None
    tax_id = company.get("tax_id")
    return {
        "name": company.get("name"),
        "tax_id": tax_id if isinstance(tax_id, str) else None,
        "address": normalize_address(company.get("address")),
    }


def normalize_individual(individual: Optional[dict]) -> Optional[dict]:
    if not individual:
        return None
    dob = individual.get("dob")
    ssn_last_4 = individual.get("ssn_last_4")
    return {
        "first_name": individual.get("first_name"),
        "last_name": individual.get("last_name"),
        "email": individual.get("email"),
        "dob": {
            "day": dob.get("day"),
            "month": dob.get("month"),
            "year": dob.get("year"),
        } if dob else None,
        "ssn_last_4": ssn_last_4 if isinstance(ssn_last_4, str) else None,
        "address": normalize_address(individual.get("address")),
    }


def normalize_requirements(requirements: Optional[dict]) -> Optional[dict]:
    if not requirements:
        return None
    return {
        "currently_due": requirements.get("currently_due") or [],
        "eventually_due": requirements.get("eventually_due") or [],
        "past_due": requirements.get("past_due") or [],
        "pending_verification": requirements.get("pending_verification") or [],
        "current_deadline": requirements.get("current_deadline"),
        "disabled_reason": requirements.get("disabled_reason"),
    }


# Same shape as requirements
normalize_future_requirements = normalize_requirements


def normalize_capabilities(capabilities: Optional[dict]) -> Optional[dict]:
    if not capabilities:
        return None
    return {k: v for k, v in capabilities.items() if isinstance(v, str)}


def normalize_external_account(account: dict) -> dict:
    bank = account if is_bank_account(account) else {}
    card = account if is_card(account) else {}
    owner = account.get("account")
    return {
        "id": account.get("id"),
        "object": account.get("object"),
        "account": owner if isinstance(owner, str) else None,
        "account_holder_name": bank.get("account_holder_name"),
        "account_holder_type": bank.get("account_holder_type"),
        "bank_name": bank.get("bank_name"),
        "country": account.get("country"),
        "currency": account.get("currency"),
        "default_for_currency": account.get("default_for_currency"),
        "fingerprint": account.get("fingerprint"),
        "last_4": bank.get("last4") or card.get("last4"),
        "metadata": account.get("metadata"),
        "routing_number": bank.get("routing_number"),
        "status": account.get("status"),
    }


def normalize_external_accounts(external_accounts: Any) -> Optional[dict]:
    if not is_external_account_list(external_accounts):
        return None
    return {
        "object": "list",
        "data": [normalize_external_account(a) for a in external_accounts["data"] if is_record(a)],
    }


def normalize_tos_acceptance(tos: Optional[dict]) -> Optional[dict]:
    if not tos:
        return None
    return {
        "date": tos.get("date"),
        "ip": tos.get("ip"),
        "user_agent": tos.get("user_agent"),
    }
