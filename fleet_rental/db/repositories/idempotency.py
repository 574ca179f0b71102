import json
from typing import Optional

from sqlalchemy.orm import Session

from fleet_rental.core.exceptions import IdempotencyKeyReusedException
from fleet_rental.core.utils import json_default
from fleet_rental.db.models import IdempotencyKey


class IdempotencyRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_idempotency_key(self, key: str) -> Optional[IdempotencyKey]:
        return self.session.get(IdempotencyKey, key)

    def create_idempotency_key(
        self, key: str, scope: str, actor_id: str, response_data: dict
    ) -> None:
        idempotency_key = IdempotencyKey(
            key=key,
            scope=scope,
            actor_id=actor_id,
            response_json=json.dumps(
                response_data, ensure_ascii=False, default=json_default
            ),
        )
        self.session.add(idempotency_key)
        self.session.flush()

    def get_cached_response(self, key: str, scope: str) -> Optional[dict]:
        record = self.get_idempotency_key(key)
        if not record:
            return None
        if record.scope != scope:
            raise IdempotencyKeyReusedException(
                f"Idempotency key {key} was already used for {record.scope}"
            )
        return json.loads(record.response_json)
