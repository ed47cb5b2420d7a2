from fastapi import APIRouter, Query

from creditledger.accounts.schemas import BalanceResponse
from creditledger.core.dependencies import AdminPrincipal, CurrentPrincipal, Ledger
from creditledger.ledger.reconciliation import audit_account
from creditledger.ledger.schemas import AuditResponse
from creditledger.transactions.schemas import TransactionResponse

router = APIRouter(tags=["ledger"])


@router.get("/credits/balance", response_model=BalanceResponse)
async def balance(ledger: Ledger, principal: CurrentPrincipal) -> BalanceResponse:
    account = await ledger.get_balance(principal.account_id)
    return BalanceResponse.model_validate(account)


@router.get("/credits/transactions", response_model=list[TransactionResponse])
async def transactions(
    ledger: Ledger,
    principal: CurrentPrincipal,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> list[TransactionResponse]:
    records = await ledger.transactions.list_for_account(principal.account_id, limit, offset)
    return [TransactionResponse.from_record(r) for r in records]


@router.get("/admin/ledger/audit/{account_id}", response_model=AuditResponse)
async def audit(account_id: str, ledger: Ledger, _: AdminPrincipal) -> AuditResponse:
    return AuditResponse.from_audit(await audit_account(ledger, account_id))
