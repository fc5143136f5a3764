# services/api/routers/schema.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from core.schema_provider import FormContext, SchemaProvider
from schemas import SchemaOut

router = APIRouter(prefix="/schema", tags=["schema"])


# ---- DI from main.py ----
def get_storage():
    from main import get_storage_adapter
    return get_storage_adapter()


@router.get("/{context}", response_model=SchemaOut)
async def get_form_schema(
    context: str,
    company_id: Optional[str] = None,
    x_company_id: Optional[str] = Header(None),
    storage=Depends(get_storage),
):
    """
    Ordered, de-duplicated field list for a form context (create / edit / view).

    Company field settings win over the legacy per-context schema; the
    built-in fallback is returned when neither is available.
    """
    try:
        ctx = FormContext(context.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown form context {context!r}")

    company = company_id or x_company_id
    if not company:
        from settings import get_settings
        company = get_settings().default_company_id

    fields = await SchemaProvider(storage, company).get_schema(ctx)
    return SchemaOut(context=ctx.value, fields=fields)
