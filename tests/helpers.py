"""
tests/helpers.py – tiny fixtures-as-functions shared by several test modules.
"""
from __future__ import annotations

import json
import uuid

import shinano.blog as blog
from shinano.blog import get_db


def doc(*blocks) -> dict:
    return {"type": "doc", "content": list(blocks)}


def para(*runs) -> dict:
    return {"type": "paragraph", "content": list(runs)}


def text(value: str, *marks) -> dict:
    node = {"type": "text", "text": value}
    if marks:
        node["marks"] = list(marks)
    return node


def add_article(
    *,
    lang: str = "en",
    title: str = "Hello",
    subtitle: str | None = None,
    abstract: str | None = None,
    content=None,
    cover_key: str | None = None,
    cover_size: int | None = None,
    category: str | None = None,
    draft: bool = False,
) -> tuple[str, int]:
    """Insert one article directly into the test database."""
    db = get_db()
    slug = f"a-{uuid.uuid4().hex[:10]}"
    raw = content if content is None or isinstance(content, str) else json.dumps(content)
    cur = db.execute(
        """
        INSERT INTO article (slug, lang, title, subtitle, abstract, category,
                             cover_key, cover_size, content_json, published_at,
                             is_draft)
        VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            slug,
            lang,
            title,
            subtitle,
            abstract,
            category,
            cover_key,
            cover_size,
            raw,
            blog.utc_now().isoformat(timespec="seconds"),
            int(draft),
        ),
    )
    db.commit()
    return slug, cur.lastrowid


def add_thought(*, lang: str = "en", content=None, draft: bool = False) -> tuple[str, int]:
    db = get_db()
    slug = f"t-{uuid.uuid4().hex[:10]}"
    raw = content if content is None or isinstance(content, str) else json.dumps(content)
    cur = db.execute(
        """
        INSERT INTO thought (slug, lang, content_json, published_at, is_draft)
        VALUES (?,?,?,?,?)
        """,
        (slug, lang, raw, blog.utc_now().isoformat(timespec="seconds"), int(draft)),
    )
    db.commit()
    return slug, cur.lastrowid


def add_photo(
    *,
    lang: str = "en",
    title: str = "Album",
    abstract: str | None = None,
    content=None,
    images=(),
    cover_key: str | None = None,
    cover_size: int | None = None,
    category: str | None = None,
    draft: bool = False,
) -> tuple[str, int]:
    """Insert one album; *images* are ``(storage_key, caption)`` pairs."""
    db = get_db()
    slug = f"p-{uuid.uuid4().hex[:10]}"
    raw = content if content is None or isinstance(content, str) else json.dumps(content)
    cur = db.execute(
        """
        INSERT INTO photo (slug, lang, title, abstract, category, cover_key,
                           cover_alt, cover_size, cover_width, cover_height,
                           content_json, published_at, is_draft)
        VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            slug,
            lang,
            title,
            abstract,
            category,
            cover_key,
            f"{title} cover" if cover_key else None,
            cover_size,
            1600 if cover_key else None,
            900 if cover_key else None,
            raw,
            blog.utc_now().isoformat(timespec="seconds"),
            int(draft),
        ),
    )
    photo_id = cur.lastrowid
    for pos, (key, caption) in enumerate(images):
        db.execute(
            """
            INSERT INTO photo_image (photo_id, storage_key, alt, caption,
                                     width, height, position)
            VALUES (?,?,?,?,?,?,?)
            """,
            (photo_id, key, caption, caption, 1200, 800, pos),
        )
    db.commit()
    return slug, photo_id


def add_book(
    *,
    title: str = "A Book",
    rate: int = 4,
    comment: str | None = None,
    link: str | None = None,
    cover_key: str | None = None,
    read_on: str = "2024-01-01",
) -> int:
    db = get_db()
    cur = db.execute(
        """
        INSERT INTO book (title, rate, comment, link, cover_key, read_on)
        VALUES (?,?,?,?,?,?)
        """,
        (title, rate, comment, link, cover_key, read_on),
    )
    db.commit()
    return cur.lastrowid


def add_comment(
    kind: str,
    content_id: int,
    *,
    name: str = "Ann",
    email: str | None = "ann@example.com",
    body: str = "First!",
    notify: bool = True,
    reply_to: int | None = None,
) -> int:
    db = get_db()
    cur = db.execute(
        """
        INSERT INTO comment (content_type, content_id, reply_to, name, email,
                             body, created_at, receive_notification)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            kind,
            content_id,
            reply_to,
            name,
            email,
            body,
            blog.utc_now().isoformat(timespec="seconds"),
            int(notify),
        ),
    )
    db.commit()
    return cur.lastrowid


def fresh_ip() -> dict:
    """Headers that make the rate limiter see a brand-new client."""
    return {"CF-Connecting-IP": f"client-{uuid.uuid4().hex[:12]}"}
