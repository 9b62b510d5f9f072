from decimal import Decimal

from cart import Cart

SEEDS = {"id": "p1", "name": "Sunflower Seeds", "price": 150.0, "stock": 100}
TOMATO = {"id": "p2", "name": "Tomato Plant", "price": 275.0, "stock": 3}


def test_add_new_line():
    cart = Cart()
    assert cart.add(SEEDS, 2) is None
    assert cart.items == [{**SEEDS, "quantity": 2}]
    assert cart.item_count == 2
    assert cart.total == Decimal("300.00")


def test_add_merges_existing_line():
    cart = Cart()
    cart.add(SEEDS)
    cart.add(SEEDS, 4)
    assert len(cart) == 1
    assert cart.items[0]["quantity"] == 5


def test_add_over_stock_clamps_and_notifies():
    cart = Cart()
    cart.add(TOMATO, 2)
    notice = cart.add(TOMATO, 5)
    assert notice is not None
    assert notice.product_id == "p2"
    assert notice.requested == 7
    assert notice.available == 3
    assert cart.items[0]["quantity"] == 3


def test_merge_refreshes_stock_for_later_set_quantity():
    cart = Cart()
    cart.add({**TOMATO, "stock": 10}, 2)
    assert cart.add(TOMATO, 1) is None
    assert cart.items[0]["stock"] == 3

    notice = cart.set_quantity("p2", 5)
    assert notice is not None
    assert notice.available == 3
    assert cart.items[0]["quantity"] == 3


def test_add_new_line_over_stock_inserts_available():
    cart = Cart()
    notice = cart.add(TOMATO, 10)
    assert notice.available == 3
    assert cart.items[0]["quantity"] == 3


def test_add_out_of_stock_product_is_not_inserted():
    cart = Cart()
    notice = cart.add({**TOMATO, "stock": 0}, 1)
    assert notice.available == 0
    assert not cart


def test_remove_is_silent_when_absent():
    cart = Cart()
    cart.add(SEEDS)
    cart.remove("missing")
    cart.remove("p1")
    assert cart.items == []


def test_set_quantity_non_positive_removes():
    for qty in (0, -3, "abc", 1.5):
        cart = Cart()
        cart.add(SEEDS, 2)
        cart.set_quantity("p1", qty)
        assert cart.items == []


def test_set_quantity_over_stock_clamps_to_stock():
    cart = Cart()
    cart.add(TOMATO, 1)
    notice = cart.set_quantity("p2", 9)
    assert notice.available == 3
    assert cart.items[0]["quantity"] == 3


def test_set_quantity_exact():
    cart = Cart()
    cart.add(TOMATO, 1)
    assert cart.set_quantity("p2", "2") is None
    assert cart.items[0]["quantity"] == 2


def test_totals_follow_every_mutation():
    cart = Cart()
    cart.add(SEEDS, 2)
    cart.add(TOMATO, 1)
    assert cart.total == Decimal("575.00")
    cart.set_quantity("p1", 1)
    assert cart.total == Decimal("425.00")
    cart.remove("p2")
    assert cart.total == Decimal("150.00")
    assert cart.item_count == 1
    cart.clear()
    assert cart.total == Decimal("0.00")
    assert cart.item_count == 0


def test_total_is_cent_exact():
    cart = Cart()
    cart.add({"id": "x", "name": "Seed packet", "price": 0.1, "stock": 10}, 3)
    assert cart.total == Decimal("0.30")


def test_items_are_copies():
    cart = Cart()
    cart.add(SEEDS, 1)
    cart.items[0]["quantity"] = 50
    assert cart.items[0]["quantity"] == 1
