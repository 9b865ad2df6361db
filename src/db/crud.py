# src/db/crud.py
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from db import models
from db.database import Database, from_db_time, to_db_time, utcnow


def new_id() -> str:
    return uuid.uuid4().hex


def pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key of a two-user conversation."""
    return "|".join(sorted((user_a, user_b)))


# ---------------------------
# Users (directory collaborator)
# ---------------------------

_USER_COLUMNS = "id, name, user_name, email, role, avatar, created_at"


def _row_to_user(row) -> models.User:
    return models.User(
        id=row["id"],
        name=row["name"],
        user_name=row["user_name"],
        email=row["email"],
        role=row["role"],
        avatar=row["avatar"],
        created_at=from_db_time(row["created_at"]),
    )


async def create_user(
    db: Database,
    name: str,
    user_name: str,
    email: str,
    role: str = "user",
    avatar: Optional[str] = None,
) -> models.User:
    """Insert a user and return it."""
    uid = new_id()
    now = utcnow()
    async with db.connect() as conn:
        await conn.execute(
            "INSERT INTO users(id, name, user_name, email, role, avatar, created_at) VALUES (?, ?, ?, ?, ?, ?, ?);",
            (uid, name, user_name, email, role, avatar, to_db_time(now)),
        )
        await conn.commit()
    return models.User(
        id=uid,
        name=name,
        user_name=user_name,
        email=email,
        role=role,
        avatar=avatar,
        created_at=now,
    )


async def get_user(db: Database, user_id: str) -> Optional[models.User]:
    """Return the User with the given id, or None."""
    async with db.connect() as conn:
        cur = await conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?;", (user_id,)
        )
        row = await cur.fetchone()
        await cur.close()
    return _row_to_user(row) if row else None


async def get_users(db: Database, user_ids: Iterable[str]) -> Dict[str, models.User]:
    """Return {id: User} for the ids that exist."""
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        return {}
    marks = ", ".join("?" * len(ids))
    async with db.connect() as conn:
        cur = await conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id IN ({marks});", tuple(ids)
        )
        rows = await cur.fetchall()
        await cur.close()
    return {row["id"]: _row_to_user(row) for row in rows}


async def search_users(
    db: Database, query: str, exclude_id: str, limit: int = 10
) -> List[models.User]:
    """Case-insensitive match over name, user_name and email, excluding one user."""
    term = query.strip().lower()
    for ch in ("\\", "%", "_"):
        term = term.replace(ch, "\\" + ch)
    like = f"%{term}%"
    async with db.connect() as conn:
        cur = await conn.execute(
            f"""
            SELECT {_USER_COLUMNS}
            FROM users
            WHERE id <> ?
              AND (LOWER(name) LIKE ? ESCAPE '\\'
                   OR LOWER(user_name) LIKE ? ESCAPE '\\'
                   OR LOWER(email) LIKE ? ESCAPE '\\')
            ORDER BY name
            LIMIT ?;
            """,
            (exclude_id, like, like, like, limit),
        )
        rows = await cur.fetchall()
        await cur.close()
    return [_row_to_user(row) for row in rows]


# ---------------------------
# Products (catalog collaborator + stock ledger storage)
# ---------------------------

_PRODUCT_COLUMNS = "id, title, description, price, stock, category, seller_id, active"


async def _product_extras(
    conn: aiosqlite.Connection, product_id: str
) -> Tuple[Tuple[str, ...], frozenset]:
    cur = await conn.execute(
        "SELECT uri FROM product_images WHERE product_id = ? ORDER BY position;",
        (product_id,),
    )
    images = tuple(row[0] for row in await cur.fetchall())
    await cur.close()
    cur = await conn.execute(
        "SELECT tag FROM product_tags WHERE product_id = ?;", (product_id,)
    )
    tags = frozenset(row[0] for row in await cur.fetchall())
    await cur.close()
    return images, tags


def _row_to_product(row, images=(), tags=frozenset()) -> models.Product:
    return models.Product(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        price=Decimal(row["price"]),
        stock=int(row["stock"]),
        category=row["category"],
        seller_id=row["seller_id"],
        active=bool(row["active"]),
        images=tuple(images),
        tags=frozenset(tags),
    )


async def create_product(
    db: Database,
    seller_id: str,
    title: str,
    price: Decimal | str | int,
    stock: int,
    category: str,
    description: Optional[str] = None,
    images: Sequence[str] = (),
    tags: Iterable[str] = (),
    active: bool = True,
) -> models.Product:
    """Insert a product listing and return it."""
    price = Decimal(str(price))
    if price < 0:
        raise ValueError("Price cannot be negative.")
    if stock < 0:
        raise ValueError("Stock cannot be negative.")
    pid = new_id()
    now = to_db_time(utcnow())
    tags = frozenset(tags)
    async with db.connect() as conn:
        await conn.execute(
            """
            INSERT INTO products(id, title, description, price, stock, category, seller_id, active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (pid, title, description, str(price), stock, category, seller_id, int(active), now, now),
        )
        await conn.executemany(
            "INSERT INTO product_images(product_id, position, uri) VALUES (?, ?, ?);",
            [(pid, pos, uri) for pos, uri in enumerate(images)],
        )
        await conn.executemany(
            "INSERT INTO product_tags(product_id, tag) VALUES (?, ?);",
            [(pid, tag) for tag in tags],
        )
        await conn.commit()
    return models.Product(
        id=pid,
        title=title,
        description=description,
        price=price,
        stock=stock,
        category=category,
        seller_id=seller_id,
        active=active,
        images=tuple(images),
        tags=tags,
    )


async def get_product(db: Database, product_id: str) -> Optional[models.Product]:
    """Fetch a product by id."""
    async with db.connect() as conn:
        cur = await conn.execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM products WHERE id = ?;", (product_id,)
        )
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        images, tags = await _product_extras(conn, product_id)
    return _row_to_product(row, images, tags)


async def product_stock(db: Database, product_id: str) -> Optional[int]:
    async with db.connect() as conn:
        cur = await conn.execute(
            "SELECT stock FROM products WHERE id = ?;", (product_id,)
        )
        row = await cur.fetchone()
        await cur.close()
    return int(row[0]) if row else None


async def update_product_price(
    db: Database, product_id: str, new_price: Decimal | str | int
) -> bool:
    """Change the live price of a listing. Return True if a row was updated."""
    price = Decimal(str(new_price))
    if price < 0:
        raise ValueError("Price cannot be negative.")
    async with db.connect() as conn:
        cur = await conn.execute(
            "UPDATE products SET price = ?, updated_at = ? WHERE id = ?;",
            (str(price), to_db_time(utcnow()), product_id),
        )
        await conn.commit()
        return cur.rowcount > 0


async def set_product_active(db: Database, product_id: str, active: bool) -> bool:
    async with db.connect() as conn:
        cur = await conn.execute(
            "UPDATE products SET active = ?, updated_at = ? WHERE id = ?;",
            (int(active), to_db_time(utcnow()), product_id),
        )
        await conn.commit()
        return cur.rowcount > 0


async def reserve_stock(
    db: Database, product_id: str, quantity: int
) -> Optional[models.Product]:
    """
    Decrement stock by quantity only if the product is active and has enough stock.
    The check and the decrement are one UPDATE statement, evaluated by sqlite under
    its write lock. Returns the post-decrement product, or None if nothing matched.
    """
    async with db.connect() as conn:
        cur = await conn.execute(
            f"""
            UPDATE products
            SET stock = stock - ?, updated_at = ?
            WHERE id = ? AND active = 1 AND stock >= ?
            RETURNING {_PRODUCT_COLUMNS};
            """,
            (quantity, to_db_time(utcnow()), product_id, quantity),
        )
        row = await cur.fetchone()
        await cur.close()
        await conn.commit()
        if not row:
            return None
        images, tags = await _product_extras(conn, product_id)
    return _row_to_product(row, images, tags)


async def release_stock(db: Database, product_id: str, quantity: int) -> bool:
    """Unconditionally add quantity back. Return False if the product is gone."""
    async with db.connect() as conn:
        cur = await conn.execute(
            "UPDATE products SET stock = stock + ?, updated_at = ? WHERE id = ?;",
            (quantity, to_db_time(utcnow()), product_id),
        )
        await conn.commit()
        return cur.rowcount > 0


# ---------------------------
# Orders
# ---------------------------

_ORDER_COLUMNS = """
    id, buyer_id, total, status, payment_method, payment_status,
    ship_street, ship_city, ship_state, ship_country, ship_zip,
    created_at, updated_at
"""


def _row_to_order(row, item_rows) -> models.Order:
    payment = None
    if row["payment_method"] is not None:
        payment = models.PaymentInfo(
            method=row["payment_method"], status=row["payment_status"] or "pending"
        )
    address = None
    if row["ship_street"] is not None:
        address = models.ShippingAddress(
            street=row["ship_street"],
            city=row["ship_city"],
            state=row["ship_state"],
            country=row["ship_country"],
            zip=row["ship_zip"],
        )
    items = tuple(
        models.OrderItem(
            product_id=r["product_id"],
            quantity=int(r["quantity"]),
            price_at_purchase=Decimal(r["price_at_purchase"]),
        )
        for r in item_rows
    )
    return models.Order(
        id=row["id"],
        buyer_id=row["buyer_id"],
        items=items,
        total=Decimal(row["total"]),
        status=row["status"],
        payment_info=payment,
        shipping_address=address,
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


async def _order_items(conn: aiosqlite.Connection, order_id: str) -> list:
    cur = await conn.execute(
        """
        SELECT product_id, quantity, price_at_purchase
        FROM order_items
        WHERE order_id = ?
        ORDER BY line_no;
        """,
        (order_id,),
    )
    rows = await cur.fetchall()
    await cur.close()
    return rows


async def insert_order(
    db: Database,
    buyer_id: str,
    items: Sequence[models.OrderItem],
    total: Decimal,
    payment_info: Optional[models.PaymentInfo],
    shipping_address: Optional[models.ShippingAddress],
    status: str = "pending",
) -> models.Order:
    """Persist an order and its lines in one transaction and return it."""
    oid = new_id()
    now = utcnow()
    address = shipping_address
    async with db.connect() as conn:
        try:
            await conn.execute(
                f"""
                INSERT INTO orders({_ORDER_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    oid,
                    buyer_id,
                    str(total),
                    status,
                    payment_info.method if payment_info else None,
                    payment_info.status if payment_info else None,
                    address.street if address else None,
                    address.city if address else None,
                    address.state if address else None,
                    address.country if address else None,
                    address.zip if address else None,
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
            await conn.executemany(
                """
                INSERT INTO order_items(order_id, line_no, product_id, quantity, price_at_purchase)
                VALUES (?, ?, ?, ?, ?);
                """,
                [
                    (oid, line_no, item.product_id, item.quantity, str(item.price_at_purchase))
                    for line_no, item in enumerate(items, start=1)
                ],
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return models.Order(
        id=oid,
        buyer_id=buyer_id,
        items=tuple(items),
        total=total,
        status=status,
        payment_info=payment_info,
        shipping_address=shipping_address,
        created_at=now,
        updated_at=now,
    )


async def get_order(db: Database, order_id: str) -> Optional[models.Order]:
    """Return the order with its lines, or None."""
    async with db.connect() as conn:
        cur = await conn.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = ?;", (order_id,)
        )
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        item_rows = await _order_items(conn, order_id)
    return _row_to_order(row, item_rows)


async def list_orders(
    db: Database, buyer_id: Optional[str] = None
) -> List[models.Order]:
    """
    List orders newest first. Restricted to one buyer when buyer_id is given.
    """
    async with db.connect() as conn:
        if buyer_id is None:
            cur = await conn.execute(
                f"SELECT {_ORDER_COLUMNS} FROM orders ORDER BY created_at DESC;"
            )
        else:
            cur = await conn.execute(
                f"SELECT {_ORDER_COLUMNS} FROM orders WHERE buyer_id = ? ORDER BY created_at DESC;",
                (buyer_id,),
            )
        rows = await cur.fetchall()
        await cur.close()
        orders = []
        for row in rows:
            orders.append(_row_to_order(row, await _order_items(conn, row["id"])))
    return orders


async def cancel_order_and_restock(
    db: Database, order_id: str, allowed_statuses: Iterable[str]
) -> Tuple[bool, Optional[str]]:
    """
    Flip the order to 'cancelled' if its status is one of allowed_statuses and put
    every line's quantity back into stock, all in one write transaction.

    Returns (cancelled, status): status is the status the order now has, or the one
    that blocked the cancellation; None when the order does not exist.
    """
    allowed = list(allowed_statuses)
    marks = ", ".join("?" * len(allowed))
    now = to_db_time(utcnow())
    async with db.connect() as conn:
        await conn.execute("BEGIN IMMEDIATE;")
        try:
            cur = await conn.execute(
                f"""
                UPDATE orders
                SET status = 'cancelled', updated_at = ?
                WHERE id = ? AND status IN ({marks});
                """,
                (now, order_id, *allowed),
            )
            if cur.rowcount == 0:
                cur = await conn.execute(
                    "SELECT status FROM orders WHERE id = ?;", (order_id,)
                )
                row = await cur.fetchone()
                await cur.close()
                await conn.rollback()
                return False, (row[0] if row else None)
            for item in await _order_items(conn, order_id):
                await conn.execute(
                    "UPDATE products SET stock = stock + ?, updated_at = ? WHERE id = ?;",
                    (item["quantity"], now, item["product_id"]),
                )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return True, "cancelled"


async def delete_order_and_restock(db: Database, order_id: str) -> Optional[bool]:
    """
    Delete an order, first returning its quantities to stock unless it was already
    cancelled. Returns None if the order does not exist, otherwise whether stock
    was restored.
    """
    now = to_db_time(utcnow())
    async with db.connect() as conn:
        await conn.execute("BEGIN IMMEDIATE;")
        try:
            cur = await conn.execute(
                "SELECT status FROM orders WHERE id = ?;", (order_id,)
            )
            row = await cur.fetchone()
            await cur.close()
            if not row:
                await conn.rollback()
                return None
            restocked = row[0] != "cancelled"
            if restocked:
                for item in await _order_items(conn, order_id):
                    await conn.execute(
                        "UPDATE products SET stock = stock + ?, updated_at = ? WHERE id = ?;",
                        (item["quantity"], now, item["product_id"]),
                    )
            await conn.execute("DELETE FROM orders WHERE id = ?;", (order_id,))
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return restocked


async def set_order_status(
    db: Database, order_id: str, expected_status: str, new_status: str
) -> bool:
    """Compare-and-set the status. Return False if the order moved on meanwhile."""
    async with db.connect() as conn:
        cur = await conn.execute(
            "UPDATE orders SET status = ?, updated_at = ? WHERE id = ? AND status = ?;",
            (new_status, to_db_time(utcnow()), order_id, expected_status),
        )
        await conn.commit()
        return cur.rowcount > 0


# ---------------------------
# Conversations & Messages
# ---------------------------

_CONVERSATION_COLUMNS = "id, user_a, user_b, last_message, last_message_at, created_at"
_MESSAGE_COLUMNS = "id, conversation_id, sender_id, content, read, created_at"


def _row_to_conversation(row) -> models.Conversation:
    return models.Conversation(
        id=row["id"],
        participants=(row["user_a"], row["user_b"]),
        last_message=row["last_message"],
        last_message_at=from_db_time(row["last_message_at"]),
        created_at=from_db_time(row["created_at"]),
    )


def _row_to_message(row) -> models.Message:
    return models.Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row["sender_id"],
        content=row["content"],
        read=bool(row["read"]),
        created_at=from_db_time(row["created_at"]),
    )


async def get_or_create_conversation(
    db: Database, user_id: str, other_user_id: str
) -> Tuple[models.Conversation, bool]:
    """
    Return (conversation, created) for the unordered pair. The unique pair_key
    makes concurrent callers converge on a single row.
    """
    now = to_db_time(utcnow())
    async with db.connect() as conn:
        cur = await conn.execute(
            """
            INSERT INTO conversations(id, user_a, user_b, pair_key, last_message, last_message_at, created_at)
            VALUES (?, ?, ?, ?, '', ?, ?)
            ON CONFLICT(pair_key) DO NOTHING;
            """,
            (new_id(), user_id, other_user_id, pair_key(user_id, other_user_id), now, now),
        )
        created = cur.rowcount > 0
        await cur.close()
        await conn.commit()
        cur = await conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE pair_key = ?;",
            (pair_key(user_id, other_user_id),),
        )
        row = await cur.fetchone()
        await cur.close()
    return _row_to_conversation(row), created


async def get_conversation(
    db: Database, conversation_id: str
) -> Optional[models.Conversation]:
    async with db.connect() as conn:
        cur = await conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?;",
            (conversation_id,),
        )
        row = await cur.fetchone()
        await cur.close()
    return _row_to_conversation(row) if row else None


async def list_conversations(db: Database, user_id: str) -> List[models.Conversation]:
    """Conversations the user takes part in, most recent activity first."""
    async with db.connect() as conn:
        cur = await conn.execute(
            f"""
            SELECT {_CONVERSATION_COLUMNS}
            FROM conversations
            WHERE user_a = ? OR user_b = ?
            ORDER BY last_message_at DESC, rowid DESC;
            """,
            (user_id, user_id),
        )
        rows = await cur.fetchall()
        await cur.close()
    return [_row_to_conversation(row) for row in rows]


async def insert_message(
    db: Database, conversation_id: str, sender_id: str, content: str
) -> models.Message:
    """Persist a message and refresh the conversation summary in one transaction."""
    mid = new_id()
    now = utcnow()
    async with db.connect() as conn:
        try:
            await conn.execute(
                f"INSERT INTO messages({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, 0, ?);",
                (mid, conversation_id, sender_id, content, to_db_time(now)),
            )
            await conn.execute(
                "UPDATE conversations SET last_message = ?, last_message_at = ? WHERE id = ?;",
                (content, to_db_time(now), conversation_id),
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
    return models.Message(
        id=mid,
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        read=False,
        created_at=now,
    )


async def list_messages(db: Database, conversation_id: str) -> List[models.Message]:
    """Messages of a conversation, oldest first."""
    async with db.connect() as conn:
        cur = await conn.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at, rowid;
            """,
            (conversation_id,),
        )
        rows = await cur.fetchall()
        await cur.close()
    return [_row_to_message(row) for row in rows]


async def mark_read(db: Database, conversation_id: str, reader_id: str) -> int:
    """Flip read on every unread message not written by reader. Return how many."""
    async with db.connect() as conn:
        cur = await conn.execute(
            """
            UPDATE messages
            SET read = 1
            WHERE conversation_id = ? AND sender_id <> ? AND read = 0;
            """,
            (conversation_id, reader_id),
        )
        await conn.commit()
        return cur.rowcount


async def unread_count(db: Database, conversation_id: str, user_id: str) -> int:
    async with db.connect() as conn:
        cur = await conn.execute(
            """
            SELECT COUNT(*)
            FROM messages
            WHERE conversation_id = ? AND sender_id <> ? AND read = 0;
            """,
            (conversation_id, user_id),
        )
        row = await cur.fetchone()
        await cur.close()
    return int(row[0])


async def unread_counts(db: Database, user_id: str) -> Dict[str, int]:
    """{conversation_id: unread count} over every conversation of the user."""
    async with db.connect() as conn:
        cur = await conn.execute(
            """
            SELECT m.conversation_id, COUNT(*)
            FROM messages m
            JOIN conversations c ON c.id = m.conversation_id
            WHERE (c.user_a = ? OR c.user_b = ?)
              AND m.sender_id <> ?
              AND m.read = 0
            GROUP BY m.conversation_id;
            """,
            (user_id, user_id, user_id),
        )
        rows = await cur.fetchall()
        await cur.close()
    return {row[0]: int(row[1]) for row in rows}
