"""Create an admin API key and print the raw value once."""
from __future__ import annotations

import sys

from app.db import init_engine, session_scope
from app.models.api_key import ApiKey, ApiScope
from app.utils.apikey import gen_key


def main(name: str = "dev-admin-key") -> None:
    init_engine()
    raw, prefix, key_hash = gen_key()
    with session_scope() as session:
        api_key = ApiKey(name=name, prefix=prefix, key_hash=key_hash, scope=ApiScope.admin, is_active=True)
        session.add(api_key)
        session.commit()
        session.refresh(api_key)
        print("Admin API key created. Use it as:")
        print(f"    Authorization: Bearer {raw}")
        print(f"(DB id: {api_key.id}, scope: {api_key.scope.value})")


if __name__ == "__main__":
    main(*sys.argv[1:2])
