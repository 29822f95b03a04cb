"""
metered/features/usage/service.py

Token usage audit.

Handles:
- Appending usage rows for charged work (no balance effect)
- Prompt truncation
- Deterministic usage queries
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select, insert
from sqlalchemy.orm import Session

from metered.core.config import settings
from metered.core.database import token_usage
from metered.models.billing import ZERO, UsageRecord, as_utc, to_tokens, utc_now, TokenAmount


def truncate_prompt(prompt: Optional[str], limit: Optional[int] = None) -> Optional[str]:
    """Cap stored prompts at `limit` characters, marking the cut with '...'."""
    if not prompt:
        return None
    limit = limit or settings.USAGE_PROMPT_MAX_CHARS
    text = str(prompt)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def record_usage(
    db: Session,
    account_id: str,
    tokens_used: TokenAmount,
    *,
    service_type: str,
    model_used: Optional[str] = None,
    prompt: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Optional[UsageRecord]:
    """
    Append a usage row. Non-positive amounts are ignored (returns None).

    Args:
        db: Open session (caller commits)
        account_id: Account charged
        tokens_used: Tokens actually consumed
        service_type: Usage kind (image_generation, chat, ...)
        model_used: Model identifier, when known
        prompt: Prompt text, truncated before storage
        metadata: Free-form JSON (batch_id, mode, outputs, ...)
        now: Timestamp override
    """
    amount = to_tokens(tokens_used)
    if amount <= ZERO:
        return None

    record = UsageRecord(
        account_id=account_id,
        tokens_used=amount,
        service_type=service_type,
        model_used=model_used or None,
        prompt=truncate_prompt(prompt),
        metadata=metadata,
        created_at=as_utc(now) or utc_now(),
    )
    db.execute(
        insert(token_usage).values(
            account_id=record.account_id,
            tokens_used=record.tokens_used,
            service_type=record.service_type,
            model_used=record.model_used,
            prompt=record.prompt,
            metadata=record.metadata,
            created_at=record.created_at,
        )
    )
    return record


def get_usage_records(
    db: Session,
    account_id: str,
    service_type: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> List[UsageRecord]:
    """Usage rows for an account, oldest first, optionally windowed (inclusive)."""
    query = select(token_usage).where(token_usage.c.account_id == account_id)

    if service_type:
        query = query.where(token_usage.c.service_type == service_type)
    if start_time:
        query = query.where(token_usage.c.created_at >= as_utc(start_time))
    if end_time:
        query = query.where(token_usage.c.created_at <= as_utc(end_time))

    rows = db.execute(query.order_by(token_usage.c.created_at, token_usage.c.id)).all()
    return [
        UsageRecord(
            account_id=row.account_id,
            tokens_used=to_tokens(row.tokens_used),
            service_type=row.service_type,
            model_used=row.model_used,
            prompt=row.prompt,
            metadata=row._mapping["metadata"],
            created_at=as_utc(row.created_at),
        )
        for row in rows
    ]
