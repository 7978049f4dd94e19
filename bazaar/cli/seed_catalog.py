# =============================================
# File: bazaar/cli/seed_catalog.py
# Purpose: CLI entrypoint to seed a demo catalog (categories, makers,
#          products, engagement) into the configured database.
# Usage:
#   python -m bazaar.cli.seed_catalog --products 60 --users 12 --db sqlite:///./bazaar.db --clear
# =============================================
from __future__ import annotations
import argparse
import random
import sys
from datetime import timedelta
from typing import List

from ..db import repo
from ..db.models import Category, Product, User
from ..services.catalog import slugify
from ..services.interactions import STORE
from ..utils.passwords import hash_password
from ..utils.timing import utcnow

CATEGORIES = ["Developer Tools", "Productivity", "Design", "AI", "Marketing", "Finance"]
TAGS = ["saas", "open-source", "api", "mobile", "ai", "no-code", "analytics", "chrome-extension", "privacy", "b2b"]
ADJECTIVES = ["Swift", "Bright", "Quiet", "Nimble", "Bold", "Clever", "Lucid", "Tidy"]
NOUNS = ["Notes", "Deploy", "Canvas", "Ledger", "Pulse", "Inbox", "Atlas", "Forge"]

DEMO_PASSWORD = "bazaar-demo"


def seed(products: int, users: int, seed_value: int = 7) -> dict:
    """Insert demo rows and drive engagement through the interaction store so counters stay derived."""
    rnd = random.Random(seed_value)
    now = utcnow()
    pw = hash_password(DEMO_PASSWORD)

    with repo.session() as s:
        cats = [Category(name=name, slug=slugify(name)) for name in CATEGORIES]
        people = [
            User(
                email=f"user{i}@bazaar.test",
                first_name=f"User{i}",
                last_name="Demo",
                role="admin" if i == 0 else "user",
                password_hash=pw,
                is_email_verified=True,
            )
            for i in range(max(2, users))
        ]
        s.add_all(cats + people)
        s.commit()

        rows: List[Product] = []
        for i in range(products):
            name = f"{rnd.choice(ADJECTIVES)} {rnd.choice(NOUNS)} {i + 1}"
            created = now - timedelta(days=rnd.uniform(0, 120))
            rows.append(
                Product(
                    slug=slugify(name),
                    name=name,
                    tagline=f"{name} helps you ship faster",
                    maker_id=rnd.choice(people).id,
                    category_id=rnd.choice(cats).id,
                    tags=sorted(rnd.sample(TAGS, k=rnd.randint(1, 3))),
                    status="Published" if rnd.random() > 0.1 else "Draft",
                    created_at=created,
                    updated_at=created,
                )
            )
        s.add_all(rows)
        s.commit()

    toggles = views = 0
    for p in rows:
        if p.status != "Published":
            continue
        for u in people:
            if u.id == p.maker_id:
                continue
            if rnd.random() < 0.3:
                STORE.record_view(p.id, u.id, f"seed-{u.id}", duration=rnd.uniform(3, 90), scrolls=rnd.randint(1, 6))
                views += 1
            if rnd.random() < 0.15:
                STORE.toggle_upvote(u.id, p.id)
                toggles += 1
            if rnd.random() < 0.08:
                STORE.toggle_bookmark(u.id, p.id)
                toggles += 1
    return {"categories": len(CATEGORIES), "users": len(people), "products": len(rows), "views": views, "toggles": toggles}


def main(argv=None):
    ap = argparse.ArgumentParser(description="Seed a demo product catalog.")
    ap.add_argument("--products", type=int, default=50, help="Number of products (default: 50)")
    ap.add_argument("--users", type=int, default=10, help="Number of users; user0 is an admin (default: 10)")
    ap.add_argument("--db", default=None, help="SQLAlchemy URL (default: DB_URL env or sqlite:///./bazaar.db)")
    ap.add_argument("--seed", type=int, default=7, help="Random seed (default: 7)")
    ap.add_argument("--clear", action="store_true", help="Drop all tables before seeding")
    args = ap.parse_args(argv)

    if args.products < 1:
        print("[WARN] --products must be at least 1.", file=sys.stderr)
        sys.exit(1)
    if args.db:
        repo.configure(args.db)
    if args.clear:
        repo.drop_db()
    repo.init_db()

    stats = seed(args.products, args.users, args.seed)
    print(
        f"[OK] Seeded {stats['products']} products, {stats['users']} users, "
        f"{stats['views']} views and {stats['toggles']} toggles. Login password: {DEMO_PASSWORD}"
    )

if __name__ == "__main__":
    main()
