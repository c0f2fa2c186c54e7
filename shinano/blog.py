#!/usr/bin/env python3
"""
A small multilingual publishing site.

Articles, photo albums and thoughts are stored as rich documents (JSON
trees written by the editor) and rendered by ``shinano.richtext`` – once
with classes for the page, once with inlined styles for the RSS feeds.
Album galleries and book covers go through the same renderer as image
nodes. A reading log sits beside them.
"""

import json
import os
import re
import secrets
import sqlite3
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from html import escape, unescape
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict
from urllib.parse import urlencode

import click
import markdown
import requests
from flask import (
    Flask,
    Response,
    abort,
    g,
    has_request_context,
    jsonify,
    redirect,
    render_template_string,
    request,
    session,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from markdown.extensions import Extension
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

from shinano import richtext

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "shinano.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

LANGS = ("zh", "en", "jp")
DEFAULT_LANG = "zh"
CONTENT_KINDS = ("article", "photo", "thought")
DETAIL_ENDPOINTS = {
    "article": "article_detail",
    "photo": "album_detail",
    "thought": "thought_detail",
}
FEED_LIMIT = 30
SITE_FEED_LIMIT = 60
LIST_LIMIT = 20
ALBUM_PAGE_SIZE = 12
BOOK_PAGE_SIZE = 20
MAX_RATE = 5
NAME_MAX_LEN = 50
COMMENT_MAX_LEN = 2000
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
RFC2822_FMT = "%a, %d %b %Y %H:%M:%S %z"

PAGE_VIEW_TTL = 24 * 60 * 60  # one count per client per day
UNSUBSCRIBE_MAX_AGE = 30 * 24 * 60 * 60

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
RESEND_API_URL = "https://api.resend.com/emails"

COMMENT_MD_EXTENSIONS = [
    "nl2br",
    "sane_lists",
    "pymdownx.tilde",
    "pymdownx.magiclink",
]

LABELS = {
    "zh": {
        "title": "积薪",
        "description": "文章、照片与随想",
        "article": "文章",
        "thought": "随想",
        "photo": "相册",
        "books": "阅读记录",
        "feed": "全站订阅",
        "newer": "较新",
        "older": "更早",
        "no_books": "还没有读书记录。",
        "views": "阅读",
        "comments": "评论",
        "no_comments": "还没有评论。",
        "reply": "回复",
        "name": "昵称",
        "email": "邮箱（可选）",
        "notify": "有人回复时通知我",
        "submit": "发表评论",
        "not_found": "页面不存在",
        "server_error": "服务器错误",
        "unsub_title": "取消回复通知",
        "unsub_missing": "缺少取消订阅的令牌。",
        "unsub_invalid": "链接无效或已过期。",
        "unsub_already": "你已经取消了这条评论的回复通知。",
        "unsub_ready": "确认不再接收这条评论的回复通知？",
        "unsub_confirm": "确认取消",
        "unsub_done": "已取消通知。",
    },
    "en": {
        "title": "Jixin",
        "description": "Articles, photos and thoughts",
        "article": "Articles",
        "thought": "Thoughts",
        "photo": "Albums",
        "books": "Reading",
        "feed": "Everything",
        "newer": "Newer",
        "older": "Older",
        "no_books": "Nothing on the shelf yet.",
        "views": "views",
        "comments": "Comments",
        "no_comments": "No comments yet.",
        "reply": "Reply",
        "name": "Name",
        "email": "Email (optional)",
        "notify": "Notify me about replies",
        "submit": "Post comment",
        "not_found": "Page not found",
        "server_error": "Internal Server Error",
        "unsub_title": "Stop reply notifications",
        "unsub_missing": "The unsubscribe token is missing.",
        "unsub_invalid": "This link is invalid or has expired.",
        "unsub_already": "Reply notifications for this comment are already off.",
        "unsub_ready": "Stop receiving reply notifications for this comment?",
        "unsub_confirm": "Unsubscribe",
        "unsub_done": "You will no longer receive notifications.",
    },
    "jp": {
        "title": "積薪",
        "description": "記事、写真、そして思索",
        "article": "記事",
        "thought": "思索",
        "photo": "アルバム",
        "books": "読書記録",
        "feed": "すべて",
        "newer": "新しい",
        "older": "古い",
        "no_books": "まだ読書記録はありません。",
        "views": "閲覧",
        "comments": "コメント",
        "no_comments": "まだコメントはありません。",
        "reply": "返信",
        "name": "名前",
        "email": "メール（任意）",
        "notify": "返信があったら通知する",
        "submit": "コメントする",
        "not_found": "ページが見つかりません",
        "server_error": "サーバーエラー",
        "unsub_title": "返信通知の停止",
        "unsub_missing": "トークンがありません。",
        "unsub_invalid": "リンクが無効か、期限切れです。",
        "unsub_already": "このコメントの返信通知はすでに停止しています。",
        "unsub_ready": "このコメントの返信通知を停止しますか？",
        "unsub_confirm": "停止する",
        "unsub_done": "通知を停止しました。",
    },
}

try:
    __version__ = version("shinano")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def env_value(key: str, default: str = "") -> str:
    """Process environment first, then the package ``.env`` file."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, DATABASE=str(DB_FILE))
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=True,
    IMG_PREFIX=env_value("IMG_PREFIX", "https://img.darmau.co"),
    BASE_URL=env_value("BASE_URL").rstrip("/"),
    UNSUBSCRIBE_KEY=env_value("UNSUBSCRIBE_KEY", SECRET_KEY),
    UNSUBSCRIBE_MAX_AGE=UNSUBSCRIBE_MAX_AGE,
    TURNSTILE_SECRET=env_value("TURNSTILE_SECRET"),
    TURNSTILE_SITE_KEY=env_value("TURNSTILE_SITE_KEY"),
    RESEND_KEY=env_value("RESEND_KEY"),
    MAIL_FROM=env_value("MAIL_FROM", "noreply@darmau.co"),
    PAGE_VIEW_TTL=PAGE_VIEW_TTL,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

RICHTEXT_CSS = Markup(richtext.page_stylesheet())


@app.template_filter("richtext")
def richtext_filter(doc) -> Markup:
    """Page-mode HTML for a stored document (placeholder when missing)."""
    return Markup(
        richtext.render(doc, richtext.StyleMode.PAGE, image_prefix=app.config["IMG_PREFIX"])
    )


class SafeLinkTreeprocessor(markdown.treeprocessors.Treeprocessor):
    """
    Escaping the source keeps raw tags out, but ``[x](javascript:…)`` is
    plain Markdown and still becomes a live link. Every ``a[href]`` and
    ``img[src]`` in the finished tree goes through the same scheme check
    as rich documents.
    """

    ATTRS = (("a", "href"), ("img", "src"))

    def run(self, root):
        for tag, attr in self.ATTRS:
            for el in root.iter(tag):
                value = el.get(attr)
                if value is None:
                    continue
                # the source was escaped once already, so "&amp;" etc. are literal here
                if richtext.safe_href(unescape(value)) == "#":
                    el.set(attr, "#")


class SafeLinkExtension(Extension):
    def extendMarkdown(self, md_inst):
        # after "inline" (20) so links and images exist as elements
        md_inst.treeprocessors.register(SafeLinkTreeprocessor(md_inst), "safe_links", 5)


@app.template_filter("comment")
def comment_filter(text: str | None) -> Markup:
    """
    Comments are public input: escape *first*, then let Markdown add
    emphasis, lists and links on top of the already-inert text.
    """
    return Markup(
        markdown.markdown(
            escape(text or ""), extensions=[*COMMENT_MD_EXTENSIONS, SafeLinkExtension()]
        )
    )


@app.template_filter("date")
def date_filter(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        return datetime.fromisoformat(iso).strftime("%Y.%m.%d")
    except ValueError:
        return iso


@app.context_processor
def inject_labels():
    lang = current_lang()
    return {
        "lang": lang,
        "L": LABELS[lang],
        "langs": LANGS,
        "richtext_css": RICHTEXT_CSS,
        "version": __version__,
    }


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Articles (long form, one row per language version)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS article (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            slug          TEXT NOT NULL,
            lang          TEXT NOT NULL,
            title         TEXT NOT NULL,
            subtitle      TEXT,
            abstract      TEXT,
            category      TEXT,
            cover_key     TEXT,
            cover_size    INTEGER,
            content_json  TEXT,
            published_at  TEXT NOT NULL,
            is_draft      INTEGER NOT NULL DEFAULT 0,
            page_view     INTEGER NOT NULL DEFAULT 0,
            UNIQUE (lang, slug)
        );

        ------------------------------------------------------------
        -- 2.  Thoughts (short posts)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS thought (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            slug          TEXT NOT NULL,
            lang          TEXT NOT NULL,
            content_json  TEXT,
            published_at  TEXT NOT NULL,
            is_draft      INTEGER NOT NULL DEFAULT 0,
            page_view     INTEGER NOT NULL DEFAULT 0,
            UNIQUE (lang, slug)
        );

        ------------------------------------------------------------
        -- 3.  Photo albums + their gallery images
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS photo (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            slug          TEXT NOT NULL,
            lang          TEXT NOT NULL,
            title         TEXT NOT NULL,
            abstract      TEXT,
            category      TEXT,
            cover_key     TEXT,
            cover_alt     TEXT,
            cover_size    INTEGER,
            cover_width   INTEGER,
            cover_height  INTEGER,
            content_json  TEXT,
            published_at  TEXT NOT NULL,
            is_draft      INTEGER NOT NULL DEFAULT 0,
            page_view     INTEGER NOT NULL DEFAULT 0,
            UNIQUE (lang, slug)
        );

        CREATE TABLE IF NOT EXISTS photo_image (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            photo_id     INTEGER NOT NULL REFERENCES photo(id) ON DELETE CASCADE,
            storage_key  TEXT NOT NULL,
            alt          TEXT,
            caption      TEXT,
            width        INTEGER,
            height       INTEGER,
            position     INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_photo_image_photo
            ON photo_image(photo_id, position);

        ------------------------------------------------------------
        -- 4.  Reading log (one row per book, language neutral)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS book (
            id         INTEGER PRIMARY KEY AUTOINCREMENT,
            title      TEXT NOT NULL,
            rate       INTEGER NOT NULL DEFAULT 0,     -- 0‥5
            comment    TEXT,
            link       TEXT,
            cover_key  TEXT,
            read_on    TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 5.  Comments (on articles, photos and thoughts)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS comment (
            id                    INTEGER PRIMARY KEY AUTOINCREMENT,
            content_type          TEXT NOT NULL,       -- article | photo | thought
            content_id            INTEGER NOT NULL,
            reply_to              INTEGER REFERENCES comment(id) ON DELETE SET NULL,
            name                  TEXT NOT NULL,
            email                 TEXT,
            body                  TEXT NOT NULL,
            created_at            TEXT NOT NULL,
            receive_notification  INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_comment_content
            ON comment(content_type, content_id);
        """
    )
    db.commit()


# Time helpers
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# CLI
###############################################################################
@app.cli.command("init")
def cli_init():
    """Create the database schema (no-op if it exists)."""
    init_db()
    click.secho(f"\n✅  Database ready at {app.config['DATABASE']}", fg="green")


@app.cli.command("import-article")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--lang", default=DEFAULT_LANG, type=click.Choice(LANGS))
@click.option("--slug", required=True)
@click.option("--title", required=True)
@click.option("--subtitle", default=None)
@click.option("--draft", is_flag=True, help="Store without publishing.")
def cli_import_article(path: Path, lang, slug, title, subtitle, draft):
    """Load one editor JSON document from PATH as an article."""
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise click.ClickException(f"{path} is not valid JSON: {exc}") from exc
    try:
        doc = richtext.parse_document(raw)
    except richtext.DocumentError as exc:
        raise click.ClickException(f"{path} is not a rich document: {exc.reason}") from exc

    init_db()
    db = get_db()
    try:
        db.execute(
            """
            INSERT INTO article (slug, lang, title, subtitle, abstract,
                                 content_json, published_at, is_draft)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                slug,
                lang,
                title,
                subtitle,
                richtext.excerpt(doc),
                json.dumps(raw, ensure_ascii=False),
                utc_now().isoformat(timespec="seconds"),
                int(draft),
            ),
        )
    except sqlite3.IntegrityError as exc:
        raise click.ClickException(f"/{lang}/article/{slug} already exists") from exc
    db.commit()
    click.secho(
        f"\n✅  Imported /{lang}/article/{slug} ({len(doc.content)} blocks).", fg="green"
    )


@app.cli.command("unsubscribe-link")
@click.argument("comment_id", type=int)
@click.option("--lang", default=DEFAULT_LANG, type=click.Choice(LANGS))
def cli_unsubscribe_link(comment_id: int, lang):
    """Print a signed unsubscribe URL for COMMENT_ID."""
    click.echo(unsubscribe_url(comment_id, lang=lang))


###############################################################################
# Content helpers
###############################################################################
def use_lang(lang: str) -> str:
    """Validate the URL language; unknown codes are a 404."""
    if lang not in LANGS:
        abort(404)
    return lang


def current_lang() -> str:
    """Language of the current URL, falling back to the default."""
    lang = (request.view_args or {}).get("lang") if has_request_context() else None
    return lang if lang in LANGS else DEFAULT_LANG


def load_document(raw) -> richtext.Document | None:
    """
    Decode a stored ``content_json`` value into a parsed document.
    Returns None (and logs) when the value is missing or unusable.
    """
    if raw is None:
        return None
    try:
        value = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        return richtext.parse_document(value)
    except (ValueError, RecursionError) as exc:
        app.logger.warning("Unreadable rich document: %s", exc)
        return None


def fetch_published(kind: str, lang: str, slug: str):
    if kind not in CONTENT_KINDS:
        abort(404)
    row = (
        get_db()
        .execute(
            f"SELECT * FROM {kind} WHERE lang=? AND slug=? AND is_draft=0",
            (lang, slug),
        )
        .fetchone()
    )
    if row is None:
        abort(404)
    return row


def comments_for(kind: str, content_id: int):
    return (
        get_db()
        .execute(
            """
            SELECT id, reply_to, name, body, created_at
              FROM comment
             WHERE content_type=? AND content_id=?
          ORDER BY created_at, id
            """,
            (kind, content_id),
        )
        .fetchall()
    )


def gallery_images(photo_id: int):
    return (
        get_db()
        .execute(
            "SELECT * FROM photo_image WHERE photo_id=? ORDER BY position, id",
            (photo_id,),
        )
        .fetchall()
    )


def image_node(
    image_id, storage_key, *, alt=None, caption=None, width=None, height=None
) -> richtext.Node:
    """A stored picture as an ``image`` node, so it renders like any other."""
    return richtext.Node(
        "image",
        attrs=richtext.Attrs(
            id=str(image_id),
            storage_key=storage_key,
            alt=alt,
            caption=caption,
            width=width,
            height=height,
        ),
    )


def cover_node(row) -> richtext.Node | None:
    if not row["cover_key"]:
        return None
    keys = row.keys()
    return image_node(
        f"cover-{row['id']}",
        row["cover_key"],
        alt=row["cover_alt"] if "cover_alt" in keys else None,
        width=row["cover_width"] if "cover_width" in keys else None,
        height=row["cover_height"] if "cover_height" in keys else None,
    )


def album_document(row, images) -> richtext.Document | None:
    """
    The gallery followed by the album's own text, as one document.
    None when the album has neither.
    """
    gallery = tuple(
        image_node(
            img["id"],
            img["storage_key"],
            alt=img["alt"],
            caption=img["caption"],
            width=img["width"],
            height=img["height"],
        )
        for img in images
    )
    doc = load_document(row["content_json"])
    body = doc.content if doc is not None else ()
    if not gallery and not body:
        return doc
    return richtext.Document(content=gallery + tuple(body))


def cover_html(row) -> Markup:
    node = cover_node(row)
    if node is None:
        return Markup("")
    return Markup(
        richtext.render_body(
            richtext.Document(content=(node,)),
            richtext.StyleMode.PAGE,
            image_prefix=app.config["IMG_PREFIX"],
        )
    )


def page_count(table: str, per_page: int, where: str = "1=1", params=()) -> int:
    (total,) = get_db().execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()
    return max(1, -(-total // per_page))


def client_ip() -> str:
    """Return best-effort client IP (Cloudflare header first, then ProxyFix)."""
    cf_ip = (request.headers.get("CF-Connecting-IP") or "").strip()
    if cf_ip:
        return cf_ip
    return (
        request.access_route[0] if request.access_route else request.remote_addr
    ) or "unknown"


def rate_limit(max_requests: int, window: int = 60):
    hits: DefaultDict[str, deque] = defaultdict(deque)
    last_sweep = 0.0

    def sweep(now: float) -> None:
        """Forget clients whose every hit has left the window."""
        nonlocal last_sweep
        if now - last_sweep < window:
            return
        last_sweep = now
        for ip in [ip for ip, dq in hits.items() if not dq or now - dq[-1] > window]:
            del hits[ip]

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            sweep(now)
            dq = hits[client_ip()]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


###############################################################################
# Templates
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="{{ lang }}">
<title>{{ title or L.title }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<meta name="description" content="{{ description or L.description }}">
<meta name="generator" content="shinano {{ version }}">
<link rel="alternate" type="application/rss+xml"
      href="{{ url_for('site_rss', lang=lang) }}" title="{{ L.title }} – RSS">
<link rel="alternate" type="application/rss+xml"
      href="{{ url_for('article_rss', lang=lang) }}" title="{{ L.title }} – {{ L.article }}">
<link rel="alternate" type="application/rss+xml"
      href="{{ url_for('thought_rss', lang=lang) }}" title="{{ L.title }} – {{ L.thought }}">
<style>
body{max-width:44rem;margin:auto;padding:1rem;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,"Noto Sans",sans-serif;color:#0f172a;background:#fff}
header{display:flex;justify-content:space-between;align-items:baseline;margin-bottom:2rem}
header a{color:#4c1d95;text-decoration:none}nav a{margin-left:.75rem;font-size:.9rem}
nav a[aria-current]{font-weight:700}.meta{color:#6b7280;font-size:.875rem}
.comment{border-top:1px solid #e4e4e7;padding:.75rem 0}.comment .meta a{color:inherit}
form.comment-form input,form.comment-form textarea{display:block;width:100%;margin:.25rem 0 .75rem;padding:.4rem;box-sizing:border-box}
.albums{display:grid;grid-template-columns:repeat(auto-fill,minmax(12rem,1fr));gap:1rem}
.albums figure{margin:0}.albums a{color:inherit;text-decoration:none}
.book{display:flex;gap:1rem;border-top:1px solid #e4e4e7;padding:1rem 0}
.book figure{margin:0;width:6rem;flex:none}.book img{max-width:100%;height:auto}
.rate{color:#f59e0b;letter-spacing:.1em}.pager{display:flex;justify-content:space-between}
footer{margin-top:4rem;color:#6b7280;font-size:.8rem}
{{ richtext_css }}
</style>
<header>
  <a href="{{ url_for('index', lang=lang) }}"><strong>{{ L.title }}</strong></a>
  <nav>
    <a href="{{ url_for('album_list', lang=lang) }}">{{ L.photo }}</a>
    <a href="{{ url_for('books', lang=lang) }}">{{ L.books }}</a>
    {% for code in langs %}
      <a href="{{ url_for('index', lang=code) }}"
         {% if code == lang %}aria-current="page"{% endif %}>{{ code }}</a>
    {% endfor %}
  </nav>
</header>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer>
  <a href="{{ url_for('site_rss', lang=lang) }}">RSS · {{ L.feed }}</a> ·
  <a href="{{ url_for('article_rss', lang=lang) }}">RSS · {{ L.article }}</a> ·
  <a href="{{ url_for('thought_rss', lang=lang) }}">RSS · {{ L.thought }}</a>
</footer>
</html>
"""

TEMPL_INDEX = wrap("""
{% block body %}
<h2>{{ L.article }}</h2>
{% for a in articles %}
  <p>
    <a href="{{ url_for('article_detail', lang=lang, slug=a['slug']) }}">{{ a['title'] }}</a>
    <span class="meta">{{ a['published_at']|date }} · {{ a['page_view'] }} {{ L.views }}</span>
    {% if a['subtitle'] %}<br><small>{{ a['subtitle'] }}</small>{% endif %}
  </p>
{% endfor %}
{% if albums %}
<h2><a href="{{ url_for('album_list', lang=lang) }}">{{ L.photo }}</a></h2>
<div class="albums">
{% for p in albums %}
  <a href="{{ url_for('album_detail', lang=lang, slug=p.slug) }}">
    {{ p.cover }}
    <span>{{ p.title }}</span>
  </a>
{% endfor %}
</div>
{% endif %}
<h2>{{ L.thought }}</h2>
{% for t in thoughts %}
  <p>
    <a href="{{ url_for('thought_detail', lang=lang, slug=t.slug) }}">{{ t.summary or t.slug }}</a>
    <span class="meta">{{ t.published_at|date }}</span>
  </p>
{% endfor %}
{% endblock %}
""")

TEMPL_COMMENTS = """
<section id="comments">
  <h3>{{ L.comments }}</h3>
  {% for c in comments %}
    <div class="comment" id="comment-{{ c['id'] }}">
      <div class="meta">
        <strong>{{ c['name'] }}</strong> · {{ c['created_at']|date }}
        {% if c['reply_to'] %} · <a href="#comment-{{ c['reply_to'] }}">↩</a>{% endif %}
        · <a href="?reply_to={{ c['id'] }}#comment-form">{{ L.reply }}</a>
      </div>
      {{ c['body']|comment }}
    </div>
  {% else %}
    <p class="meta">{{ L.no_comments }}</p>
  {% endfor %}

  <form class="comment-form" id="comment-form" method="post"
        action="{{ url_for('post_comment', lang=lang, kind=kind, slug=row['slug']) }}">
    {% if reply_to %}<input type="hidden" name="reply_to" value="{{ reply_to }}">{% endif %}
    <label>{{ L.name }}<input name="name" maxlength="{{ name_max }}" required></label>
    <label>{{ L.email }}<input name="email" type="email"></label>
    <label><input type="checkbox" name="notify" value="1" style="display:inline;width:auto"> {{ L.notify }}</label>
    <textarea name="body" rows="5" maxlength="{{ body_max }}" required></textarea>
    {% if turnstile_site_key %}
      <div class="cf-turnstile" data-sitekey="{{ turnstile_site_key }}"></div>
      <script src="https://challenges.cloudflare.com/turnstile/v0/api.js" async defer></script>
    {% endif %}
    <button type="submit">{{ L.submit }}</button>
  </form>
</section>

<script>
fetch("{{ url_for('page_view', kind=kind, content_id=row['id']) }}",
      {method: "POST", credentials: "same-origin"})
  .then(r => r.ok ? r.json() : null)
  .then(d => { if (d) document.getElementById("pv").textContent = d.page_view; });
</script>
"""

TEMPL_ARTICLE = wrap("""
{% block body %}
<h1>{{ row['title'] }}</h1>
{% if row['subtitle'] %}<p class="meta">{{ row['subtitle'] }}</p>{% endif %}
<p class="meta">
  {{ row['published_at']|date }}
  {% if row['category'] %} · {{ row['category'] }}{% endif %}
  · <span id="pv">{{ row['page_view'] }}</span> {{ L.views }}
</p>
{{ doc|richtext }}
""" + TEMPL_COMMENTS + """
{% endblock %}
""")

TEMPL_THOUGHT = wrap("""
{% block body %}
<p class="meta">
  {{ row['published_at']|date }} · <span id="pv">{{ row['page_view'] }}</span> {{ L.views }}
</p>
{{ doc|richtext }}
""" + TEMPL_COMMENTS + """
{% endblock %}
""")

TEMPL_ALBUM = wrap("""
{% block body %}
<h1>{{ row['title'] }}</h1>
{% if row['abstract'] %}<p class="meta">{{ row['abstract'] }}</p>{% endif %}
<p class="meta">
  {{ row['published_at']|date }}
  {% if row['category'] %} · {{ row['category'] }}{% endif %}
  · <span id="pv">{{ row['page_view'] }}</span> {{ L.views }}
</p>
{{ doc|richtext }}
""" + TEMPL_COMMENTS + """
{% endblock %}
""")

TEMPL_ALBUMS = wrap("""
{% block body %}
<h2>{{ L.photo }}</h2>
<div class="albums">
{% for p in albums %}
  <a href="{{ url_for('album_detail', lang=lang, slug=p.slug) }}">
    {{ p.cover }}
    <span>{{ p.title }}</span>
    <span class="meta">{{ p.published_at|date }}</span>
  </a>
{% endfor %}
</div>
<p class="pager">
  {% if page > 1 %}
    <a href="{{ url_for('album_list', lang=lang, page=page - 1) }}" rel="prev">← {{ L.newer }}</a>
  {% else %}<span></span>{% endif %}
  {% if page < pages %}
    <a href="{{ url_for('album_list', lang=lang, page=page + 1) }}" rel="next">{{ L.older }} →</a>
  {% endif %}
</p>
{% endblock %}
""")

TEMPL_BOOKS = wrap("""
{% block body %}
<h2>{{ L.books }}</h2>
{% for b in books %}
  <div class="book" id="book-{{ b.id }}">
    {{ b.cover }}
    <div>
      <strong>
        {% if b.link %}<a href="{{ b.link }}" rel="noopener noreferrer">{{ b.title }}</a>
        {% else %}{{ b.title }}{% endif %}
      </strong>
      <div class="meta">
        <span class="rate" title="{{ b.rate }}/{{ max_rate }}">{{ "★" * b.rate }}{{ "☆" * (max_rate - b.rate) }}</span>
        · {{ b.read_on|date }}
      </div>
      {{ b.comment|comment }}
    </div>
  </div>
{% else %}
  <p class="meta">{{ L.no_books }}</p>
{% endfor %}
<p class="pager">
  {% if page > 1 %}
    <a href="{{ url_for('books', lang=lang, page=page - 1) }}" rel="prev">← {{ L.newer }}</a>
  {% else %}<span></span>{% endif %}
  {% if page < pages %}
    <a href="{{ url_for('books', lang=lang, page=page + 1) }}" rel="next">{{ L.older }} →</a>
  {% endif %}
</p>
{% endblock %}
""")

TEMPL_UNSUBSCRIBE = wrap("""
{% block body %}
<h2>{{ L.unsub_title }}</h2>
{% if state == "ready" %}
  <p>{{ L.unsub_ready }}</p>
  <form method="post">
    <input type="hidden" name="token" value="{{ token }}">
    <button type="submit">{{ L.unsub_confirm }}</button>
  </form>
{% elif state == "done" %}
  <p>{{ L.unsub_done }}</p>
{% elif state == "already" %}
  <p>{{ L.unsub_already }}</p>
{% else %}
  <p role="alert">{{ message }}</p>
{% endif %}
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
  <h2>{{ L.not_found }}</h2>
  <p><a href="{{ url_for('index', lang=lang) }}">{{ L.title }}</a></p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
  <h2>{{ L.server_error }}</h2>
  <p><a href="{{ url_for('index', lang=lang) }}">{{ L.title }}</a></p>
{% endblock %}
""")


###############################################################################
# Resources
###############################################################################
@app.route("/robots.txt")
def robots():
    rules = (
        "User-agent: *\n"
        "Allow: /\n"
        "Disallow: /api/\n"
        "Disallow: /*/unsubscribe\n\n"
        f"Sitemap: {url_for('sitemap_index', _external=True)}\n"
    )
    return (
        Response(rules, mimetype="text/plain", direct_passthrough=True),
        200,
        {"Cache-Control": "public, max-age=86400"},
    )  # 1 day cache


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Permissions-Policy": "interest-cohort=()",
        }
    )
    return resp


###############################################################################
# Index + content pages
###############################################################################
@app.route("/")
def root():
    return redirect(url_for("index", lang=DEFAULT_LANG))


def _album_cards(rows):
    return [
        {
            "slug": r["slug"],
            "title": r["title"],
            "published_at": r["published_at"],
            "cover": cover_html(r),
        }
        for r in rows
    ]


@app.route("/<lang>")
def index(lang):
    use_lang(lang)
    db = get_db()
    articles = db.execute(
        """
        SELECT slug, title, subtitle, published_at, page_view FROM article
         WHERE lang=? AND is_draft=0
      ORDER BY published_at DESC LIMIT ?
        """,
        (lang, LIST_LIMIT),
    ).fetchall()
    albums = db.execute(
        """
        SELECT * FROM photo
         WHERE lang=? AND is_draft=0
      ORDER BY published_at DESC LIMIT ?
        """,
        (lang, ALBUM_PAGE_SIZE // 2),
    ).fetchall()
    rows = db.execute(
        """
        SELECT slug, content_json, published_at FROM thought
         WHERE lang=? AND is_draft=0
      ORDER BY published_at DESC LIMIT ?
        """,
        (lang, LIST_LIMIT),
    ).fetchall()
    thoughts = [
        {
            "slug": r["slug"],
            "published_at": r["published_at"],
            "summary": richtext.excerpt(load_document(r["content_json"]), limit=80),
        }
        for r in rows
    ]
    return render_template_string(
        TEMPL_INDEX, articles=articles, albums=_album_cards(albums), thoughts=thoughts
    )


def _content_page(template: str, kind: str, row, **ctx):
    ctx.setdefault("doc", load_document(row["content_json"]))
    reply_to = request.args.get("reply_to", type=int)
    return render_template_string(
        template,
        kind=kind,
        row=row,
        comments=comments_for(kind, row["id"]),
        reply_to=reply_to,
        name_max=NAME_MAX_LEN,
        body_max=COMMENT_MAX_LEN,
        turnstile_site_key=app.config.get("TURNSTILE_SITE_KEY"),
        **ctx,
    )


@app.route("/<lang>/article/<slug>")
def article_detail(lang, slug):
    use_lang(lang)
    row = fetch_published("article", lang, slug)
    return _content_page(
        TEMPL_ARTICLE,
        "article",
        row,
        title=f"{row['title']} – {LABELS[lang]['title']}",
        description=row["abstract"] or row["subtitle"],
    )


@app.route("/<lang>/thought/<slug>")
def thought_detail(lang, slug):
    use_lang(lang)
    row = fetch_published("thought", lang, slug)
    summary = richtext.excerpt(load_document(row["content_json"]), limit=60)
    return _content_page(
        TEMPL_THOUGHT,
        "thought",
        row,
        title=f"{summary or slug} – {LABELS[lang]['title']}",
        description=summary,
    )


@app.route("/<lang>/album/<slug>")
def album_detail(lang, slug):
    use_lang(lang)
    row = fetch_published("photo", lang, slug)
    return _content_page(
        TEMPL_ALBUM,
        "photo",
        row,
        doc=album_document(row, gallery_images(row["id"])),
        title=f"{row['title']} – {LABELS[lang]['title']}",
        description=row["abstract"],
    )


@app.route("/<lang>/albums", defaults={"page": 1})
@app.route("/<lang>/albums/all/<int:page>")
def album_list(lang, page):
    use_lang(lang)
    pages = page_count("photo", ALBUM_PAGE_SIZE, "lang=? AND is_draft=0", (lang,))
    if page < 1 or page > pages:
        abort(404)
    rows = get_db().execute(
        """
        SELECT * FROM photo
         WHERE lang=? AND is_draft=0
      ORDER BY published_at DESC, id DESC
         LIMIT ? OFFSET ?
        """,
        (lang, ALBUM_PAGE_SIZE, (page - 1) * ALBUM_PAGE_SIZE),
    ).fetchall()
    return render_template_string(
        TEMPL_ALBUMS,
        albums=_album_cards(rows),
        page=page,
        pages=pages,
        title=f"{LABELS[lang]['photo']} – {LABELS[lang]['title']}",
    )


@app.route("/<lang>/books")
def books(lang):
    use_lang(lang)
    page = request.args.get("page", default=1, type=int)
    pages = page_count("book", BOOK_PAGE_SIZE)
    if page < 1 or page > pages:
        abort(404)
    rows = get_db().execute(
        "SELECT * FROM book ORDER BY read_on DESC, id DESC LIMIT ? OFFSET ?",
        (BOOK_PAGE_SIZE, (page - 1) * BOOK_PAGE_SIZE),
    ).fetchall()
    shelf = [
        {
            "id": r["id"],
            "title": r["title"],
            "rate": min(max(r["rate"] or 0, 0), MAX_RATE),
            "comment": r["comment"],
            "link": richtext.safe_href(r["link"]) if r["link"] else None,
            "read_on": r["read_on"],
            "cover": cover_html(
                {"id": r["id"], "cover_key": r["cover_key"], "cover_alt": r["title"]}
            ),
        }
        for r in rows
    ]
    return render_template_string(
        TEMPL_BOOKS,
        books=shelf,
        page=page,
        pages=pages,
        max_rate=MAX_RATE,
        title=f"{LABELS[lang]['books']} – {LABELS[lang]['title']}",
    )


###############################################################################
# Comments + reply notifications
###############################################################################
class TurnstileError(RuntimeError):
    """The bot challenge could not be verified."""


class NotificationError(RuntimeError):
    """The reply notification email could not be sent."""


def verify_turnstile(token: str | None, ip: str | None = None) -> None:
    """
    Ask Cloudflare whether *token* solves the challenge.
    No-op when no secret is configured (local development, tests).
    """
    secret = app.config.get("TURNSTILE_SECRET")
    if not secret:
        return
    if not token:
        raise TurnstileError("missing challenge token")

    data = {"secret": secret, "response": token}
    if ip:
        data["remoteip"] = ip
    try:
        resp = requests.post(TURNSTILE_VERIFY_URL, data=data, timeout=10)
        resp.raise_for_status()
        outcome = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise TurnstileError("challenge verification unavailable") from exc

    if not isinstance(outcome, dict) or not isinstance(outcome.get("success"), bool):
        raise TurnstileError("invalid challenge response")
    if not outcome["success"]:
        codes = outcome.get("error-codes") or ["rejected"]
        raise TurnstileError(", ".join(str(c) for c in codes))


def _unsubscribe_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(app.config["UNSUBSCRIBE_KEY"], salt="unsubscribe")


def make_unsubscribe_token(comment_id: int) -> str:
    return _unsubscribe_serializer().dumps({"comment_id": int(comment_id)})


def read_unsubscribe_token(token: str | None, max_age: int | None = None) -> int | None:
    """
    Return the comment id inside *token*, or None when it is missing,
    forged, malformed or older than *max_age* seconds.
    """
    if not token:
        return None
    if max_age is None:
        max_age = app.config["UNSUBSCRIBE_MAX_AGE"]
    try:
        data = _unsubscribe_serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        app.logger.warning("Unsubscribe token expired")
        return None
    except BadSignature:
        app.logger.warning("Unsubscribe token signature mismatch")
        return None

    cid = data.get("comment_id") if isinstance(data, dict) else None
    if isinstance(cid, bool) or not isinstance(cid, int):
        return None
    return cid


def unsubscribe_url(comment_id: int, *, lang: str = DEFAULT_LANG) -> str:
    base = app.config.get("BASE_URL") or (
        request.url_root.rstrip("/") if has_request_context() else ""
    )
    query = urlencode({"token": make_unsubscribe_token(comment_id)})
    return f"{base}/{lang}/unsubscribe?{query}"


def notify_reply(
    parent, *, reply_name: str, reply_body: str, title: str, link: str, lang: str
) -> bool:
    """
    Email the author of *parent* that someone replied.

    Returns False when there is nothing to do (no opt-in, no address,
    no mail key); raises NotificationError when the mail API fails.
    """
    if not parent["receive_notification"] or not parent["email"]:
        return False
    key = app.config.get("RESEND_KEY")
    if not key:
        app.logger.info("RESEND_KEY not set – skipping reply notification")
        return False

    unsub = unsubscribe_url(parent["id"], lang=lang)
    html_body = (
        f"<p>{escape(reply_name)} replied to your comment on "
        f'<a href="{escape(link)}">{escape(title)}</a>:</p>'
        f"<blockquote>{escape(reply_body)}</blockquote>"
        f'<p style="color:#6b7280;font-size:12px;">'
        f'<a href="{escape(unsub)}">Stop these notifications</a></p>'
    )
    text_body = (
        f"{reply_name} replied to your comment on {title}:\n\n"
        f"{reply_body}\n\n{link}\n\nUnsubscribe: {unsub}\n"
    )
    payload = {
        "from": app.config["MAIL_FROM"],
        "to": [parent["email"]],
        "subject": f"New reply: {title}",
        "html": html_body,
        "text": text_body,
        "headers": {"List-Unsubscribe": f"<{unsub}>"},
    }
    try:
        resp = requests.post(
            RESEND_API_URL,
            json=payload,
            headers={"Authorization": f"Bearer {key}"},
            timeout=10,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise NotificationError(f"mail API failed for comment {parent['id']}") from exc
    return True


@app.route("/<lang>/<kind>/<slug>/comment", methods=["POST"])
@rate_limit(max_requests=20, window=60)
def post_comment(lang, kind, slug):
    use_lang(lang)
    row = fetch_published(kind, lang, slug)

    name = (request.form.get("name") or "").strip()
    body = (request.form.get("body") or "").strip()
    email = (request.form.get("email") or "").strip() or None
    notify = request.form.get("notify") == "1"
    reply_to = request.form.get("reply_to", type=int)

    if not name or len(name) > NAME_MAX_LEN:
        abort(400)
    if not body or len(body) > COMMENT_MAX_LEN:
        abort(400)
    if email and not EMAIL_RE.match(email):
        abort(400)

    try:
        verify_turnstile(request.form.get("cf-turnstile-response"), client_ip())
    except TurnstileError as exc:
        app.logger.warning("Comment rejected by challenge: %s", exc)
        abort(403)

    db = get_db()
    parent = None
    if reply_to is not None:
        parent = db.execute(
            "SELECT * FROM comment WHERE id=? AND content_type=? AND content_id=?",
            (reply_to, kind, row["id"]),
        ).fetchone()
        if parent is None:
            abort(400)

    cur = db.execute(
        """
        INSERT INTO comment (content_type, content_id, reply_to, name, email,
                             body, created_at, receive_notification)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            kind,
            row["id"],
            reply_to,
            name,
            email,
            body,
            utc_now().isoformat(timespec="seconds"),
            int(notify and bool(email)),
        ),
    )
    db.commit()

    link = url_for(DETAIL_ENDPOINTS[kind], lang=lang, slug=slug, _external=True)
    if parent is not None:
        title = row["title"] if "title" in row.keys() else (
            richtext.excerpt(load_document(row["content_json"]), limit=40) or slug
        )
        try:
            notify_reply(
                parent,
                reply_name=name,
                reply_body=body,
                title=title,
                link=link,
                lang=lang,
            )
        except NotificationError:
            app.logger.exception("Reply notification failed")

    return redirect(f"{link}#comment-{cur.lastrowid}")


###############################################################################
# Unsubscribe
###############################################################################
@app.route("/<lang>/unsubscribe", methods=["GET", "POST"])
def unsubscribe(lang):
    use_lang(lang)
    labels = LABELS[lang]
    token = request.values.get("token")
    if not token:
        return render_template_string(
            TEMPL_UNSUBSCRIBE, state="error", message=labels["unsub_missing"]
        ), 400

    comment_id = read_unsubscribe_token(token)
    db = get_db()
    row = (
        db.execute(
            "SELECT id, receive_notification FROM comment WHERE id=?", (comment_id,)
        ).fetchone()
        if comment_id is not None
        else None
    )
    if row is None:
        return render_template_string(
            TEMPL_UNSUBSCRIBE, state="error", message=labels["unsub_invalid"]
        ), 400

    if request.method == "POST":
        db.execute("UPDATE comment SET receive_notification=0 WHERE id=?", (row["id"],))
        db.commit()
        return render_template_string(TEMPL_UNSUBSCRIBE, state="done")

    state = "ready" if row["receive_notification"] else "already"
    return render_template_string(TEMPL_UNSUBSCRIBE, state=state, token=token)


###############################################################################
# Read counter
###############################################################################
@app.route("/api/page-view/<kind>/<int:content_id>", methods=["POST"])
@rate_limit(max_requests=120, window=60)
def page_view(kind, content_id):
    """
    Count one read per client per ``PAGE_VIEW_TTL``.
    The "already counted" record lives in the signed session cookie,
    so repeated reloads do not inflate the counter.
    """
    if kind not in CONTENT_KINDS:
        abort(404)
    db = get_db()
    row = db.execute(
        f"SELECT page_view FROM {kind} WHERE id=? AND is_draft=0", (content_id,)
    ).fetchone()
    if row is None:
        abort(404)

    now = time()
    ttl = app.config["PAGE_VIEW_TTL"]
    seen = session.get("page_views")
    seen = seen if isinstance(seen, dict) else {}
    # drop expired / malformed records before checking
    seen = {
        k: ts for k, ts in seen.items() if isinstance(ts, (int, float)) and now - ts < ttl
    }

    key = f"{kind}_{content_id}"
    if key in seen:
        session["page_views"] = seen
        return jsonify(counted=False, page_view=row["page_view"])

    db.execute(f"UPDATE {kind} SET page_view = page_view + 1 WHERE id=?", (content_id,))
    db.commit()
    seen[key] = now
    session["page_views"] = seen
    return jsonify(counted=True, page_view=row["page_view"] + 1)


###############################################################################
# RSS feeds
###############################################################################
def _rfc2822(dt_str: str | None) -> str:
    """ISO-8601 → RFC 2822 in UTC; unparsable values fall back to *now*."""
    try:
        dt = datetime.fromisoformat(dt_str)
    except (TypeError, ValueError):
        dt = utc_now()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(RFC2822_FMT)


def cdata(text: str | None) -> str:
    """Wrap *text* in CDATA, splitting any literal ``]]>`` inside it."""
    return "<![CDATA[" + (text or "").replace("]]>", "]]]]><![CDATA[>") + "]]>"


def feed_html(doc: richtext.Document | None, fallback: str | None = None) -> str:
    """
    Inline-styled HTML for ``<content:encoded>``.
    Documents that are missing or empty fall back to *fallback* as a
    single paragraph (or nothing).
    """
    if doc is not None and doc.content:
        return richtext.render(
            doc, richtext.StyleMode.FEED, image_prefix=app.config["IMG_PREFIX"]
        )
    if fallback:
        return f'<p style="{richtext.style_for("p")}">{escape(fallback)}</p>'
    return ""


def _rss(items, *, title, description, site_url, feed_url, lang) -> str:
    """
    Build a valid RSS 2.0 document (single string).
    `items` are dicts with title/link/guid/pub_date/description/content and
    optional category/enclosure.
    """
    out = []
    for it in items:
        category = (
            f"<category>{escape(it['category'])}</category>" if it.get("category") else ""
        )
        enclosure = ""
        if it.get("enclosure"):
            enc = it["enclosure"]
            enclosure = (
                f'<enclosure url="{escape(enc["url"])}" type="{enc["type"]}" '
                f'length="{int(enc["length"] or 0)}" />'
            )
        out.append(
            f"""
        <item>
          <title>{cdata(it['title'])}</title>
          <link>{escape(it['link'])}</link>
          <guid isPermaLink="false">{escape(str(it['guid']))}</guid>
          <pubDate>{_rfc2822(it['pub_date'])}</pubDate>
          {category}
          <description>{cdata(it['description'])}</description>
          <content:encoded>{cdata(it['content'])}</content:encoded>
          {enclosure}
        </item>"""
        )

    return f"""<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0"
     xmlns:atom="http://www.w3.org/2005/Atom"
     xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>{escape(title)}</title>
    <link>{escape(site_url)}</link>
    <description>{escape(description)}</description>
    <language>{lang}</language>
    <ttl>60</ttl>
    <generator>shinano {__version__}</generator>
    <docs>https://validator.w3.org/feed/docs/rss2.html</docs>
    <lastBuildDate>{_rfc2822(utc_now().isoformat())}</lastBuildDate>
    <atom:link href="{escape(feed_url)}"
               rel="self"
               type="application/rss+xml" />
    {"".join(out)}
  </channel>
</rss>"""


def _feed_response(xml: str):
    return Response(
        xml,
        mimetype="application/rss+xml",
        headers={"Cache-Control": "public, max-age=3600"},
    )


def _published(kind: str, lang: str, limit: int = FEED_LIMIT):
    return get_db().execute(
        f"""
        SELECT * FROM {kind} WHERE lang=? AND is_draft=0
         ORDER BY published_at DESC LIMIT ?
        """,
        (lang, limit),
    ).fetchall()


def _cover_enclosure(row):
    if not row["cover_key"]:
        return None
    prefix = app.config["IMG_PREFIX"].rstrip("/")
    return {
        "url": f"{prefix}/cdn-cgi/image/format=jpeg,width=960/{row['cover_key']}",
        "type": "image/jpeg",
        "length": row["cover_size"],
    }


def _article_item(r, lang: str) -> dict:
    doc = load_document(r["content_json"])
    summary = r["abstract"] or r["subtitle"] or ""
    return {
        "title": r["title"],
        "link": url_for("article_detail", lang=lang, slug=r["slug"], _external=True),
        "guid": f"article-{r['id']}",
        "pub_date": r["published_at"],
        "description": r["subtitle"] or summary or richtext.excerpt(doc),
        "content": feed_html(doc, summary),
        "category": r["category"],
        "enclosure": _cover_enclosure(r),
    }


def _photo_item(r, lang: str) -> dict:
    doc = album_document(r, gallery_images(r["id"]))
    cover = cover_node(r)
    nodes = ((cover,) if cover else ()) + (doc.content if doc else ())
    return {
        "title": r["title"],
        "link": url_for("album_detail", lang=lang, slug=r["slug"], _external=True),
        "guid": f"photo-{r['id']}",
        "pub_date": r["published_at"],
        "description": r["abstract"] or richtext.excerpt(doc),
        "content": feed_html(richtext.Document(content=nodes), r["abstract"]),
        "category": r["category"] or LABELS[lang]["photo"],
        "enclosure": _cover_enclosure(r),
    }


def _thought_item(r, lang: str) -> dict:
    doc = load_document(r["content_json"])
    summary = richtext.excerpt(doc, limit=80)
    return {
        "title": summary or r["slug"],
        "link": url_for("thought_detail", lang=lang, slug=r["slug"], _external=True),
        "guid": f"thought-{r['id']}",
        "pub_date": r["published_at"],
        "description": summary,
        "content": feed_html(doc, summary),
        "category": LABELS[lang]["thought"],
    }


def _pub_key(item) -> datetime:
    try:
        dt = datetime.fromisoformat(item["pub_date"])
    except (TypeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _channel(items, lang: str, endpoint: str, section: str | None = None):
    labels = LABELS[lang]
    xml = _rss(
        items,
        title=f"{labels['title']} - {labels[section] if section else 'RSS'}",
        description=labels["description"],
        site_url=url_for("index", lang=lang, _external=True),
        feed_url=url_for(endpoint, lang=lang, _external=True),
        lang=lang,
    )
    return _feed_response(xml)


@app.route("/<lang>/rss.xml")
def site_rss(lang):
    """Articles, albums and thoughts in one feed, newest first."""
    use_lang(lang)
    items = [_article_item(r, lang) for r in _published("article", lang)]
    items += [_photo_item(r, lang) for r in _published("photo", lang)]
    items += [_thought_item(r, lang) for r in _published("thought", lang)]
    items.sort(key=_pub_key, reverse=True)
    return _channel(items[:SITE_FEED_LIMIT], lang, "site_rss")


@app.route("/<lang>/article/rss.xml")
def article_rss(lang):
    use_lang(lang)
    items = [_article_item(r, lang) for r in _published("article", lang)]
    return _channel(items, lang, "article_rss", "article")


@app.route("/<lang>/thought/rss.xml")
def thought_rss(lang):
    use_lang(lang)
    items = [_thought_item(r, lang) for r in _published("thought", lang)]
    return _channel(items, lang, "thought_rss", "thought")


###############################################################################
# Sitemaps
###############################################################################
def _url_entry(loc: str, lastmod: str | None = None) -> str:
    mod = f"<lastmod>{escape(lastmod[:10])}</lastmod>" if lastmod else ""
    return f"<url><loc>{escape(loc)}</loc>{mod}</url>"


@app.route("/<lang>/sitemap.xml")
def sitemap(lang):
    use_lang(lang)
    db = get_db()
    urls = [
        _url_entry(url_for("index", lang=lang, _external=True)),
        _url_entry(url_for("album_list", lang=lang, _external=True)),
        _url_entry(url_for("books", lang=lang, _external=True)),
    ]
    for kind in CONTENT_KINDS:
        rows = db.execute(
            f"""
            SELECT slug, published_at FROM {kind}
             WHERE lang=? AND is_draft=0 ORDER BY published_at DESC
            """,
            (lang,),
        ).fetchall()
        urls.extend(
            _url_entry(
                url_for(DETAIL_ENDPOINTS[kind], lang=lang, slug=r["slug"], _external=True),
                r["published_at"],
            )
            for r in rows
        )
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        + "".join(urls)
        + "</urlset>"
    )
    return Response(xml, mimetype="application/xml")


@app.route("/sitemap-index.xml")
def sitemap_index():
    maps = "".join(
        f"<sitemap><loc>{escape(url_for('sitemap', lang=code, _external=True))}</loc></sitemap>"
        for code in LANGS
    )
    xml = (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
        + maps
        + "</sitemapindex>"
    )
    return Response(xml, mimetype="application/xml")


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    title = LABELS[current_lang()]["not_found"]
    return render_template_string(TEMPL_404, title=title), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.
    In debug mode Flask bypasses this handler and shows the traceback.
    """
    app.logger.error("Unhandled error: %s", exc)
    title = LABELS[current_lang()]["server_error"]
    return render_template_string(TEMPL_500, title=title), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
