"""Seed a development database with a client, two artisans and their API keys."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

from app import db, models
from app.config import get_settings
from app.utils.apikey import gen_key

SEED_USERS = (
    ("awa", "awa@example.com", models.ApiScope.client, False),
    ("moussa", "moussa@example.com", models.ApiScope.artisan, True),
    ("ibrahima", "ibrahima@example.com", models.ApiScope.artisan, False),
)


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    db.init_engine()
    db.create_all()
    with db.session_scope() as session:
        for username, email, scope, verified in SEED_USERS:
            user = models.User(username=username, email=email, is_verified=verified)
            session.add(user)
            session.flush()
            raw, prefix, key_hash = gen_key()
            session.add(models.ApiKey(name=f"seed-{username}", prefix=prefix, key_hash=key_hash, scope=scope, user_id=user.id))
            print(f"{username:<10} id={user.id} scope={scope.value:<8} verified={verified} key={raw}")
        session.commit()
    print("Seed data inserted.")


if __name__ == "__main__":
    main()
