"""Integration tests: a manager used the way an application would use it."""

import threading
from dataclasses import dataclass

import pytest

from cryptstore import StoreManager, TruncatedInputError


@dataclass
class Article:
    id: str
    title: str


@pytest.fixture(params=["", "secret"], ids=["plain", "encrypted"])
def secret(request):
    return request.param


def test_article_crud(tmp_path, secret):
    dbm = StoreManager("article.db", tmp_path, secret, False, ["article"])

    articles = [Article(f"ID-{i:04d}", f"title {i}") for i in range(1, 6)]
    for article in articles:
        dbm.save("article", article.id, article)

    assert dbm.get_key_list("article", "ID-") == [a.id for a in articles]
    assert dbm.get_object("article", "ID-0003") == {"id": "ID-0003", "title": "title 3"}

    dbm.save("article", "ID-0003", Article("ID-0003", "updated"))
    assert dbm.get_object("article", "ID-0003")["title"] == "updated"

    dbm.delete("article", "ID-0003")
    assert [a["id"] for a in dbm.get_objects_by_prefix("article", "ID-")] == [
        "ID-0001",
        "ID-0002",
        "ID-0004",
        "ID-0005",
    ]


def test_data_survives_new_manager(tmp_path, secret):
    StoreManager("persist.db", tmp_path, secret, False, ["a"]).save("a", "k", {"v": [1, 2]})

    again = StoreManager("persist.db", tmp_path, secret, False, ["a", "b"])
    assert again.get_object("a", "k") == {"v": [1, 2]}
    assert again.list_buckets() == ["a", "b"]


def test_plain_store_read_with_secret_fails_or_garbles(tmp_path):
    StoreManager("mixed.db", tmp_path, "", False, ["a"]).save("a", "k", b"short")
    reader = StoreManager("mixed.db", tmp_path, "secret", False, ["a"])

    with pytest.raises(TruncatedInputError):
        reader.get_one("a", "k")


@pytest.mark.parametrize("batch_mode", [False, True], ids=["per-call", "batch"])
def test_concurrent_writers_and_readers(tmp_path, secret, batch_mode):
    dbm = StoreManager("threads.db", tmp_path, secret, batch_mode, ["a"])
    errors = []

    def worker(n):
        try:
            for i in range(20):
                dbm.save("a", f"w{n}-{i:02d}", {"n": n, "i": i})
                assert dbm.get_object("a", f"w{n}-{i:02d}") == {"n": n, "i": i}
        except Exception as e:  # collected and asserted below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(dbm.get_key_list("a", "w")) == 120
    assert dbm.is_open == batch_mode

    dbm.set_batch_mode(False)
    assert not dbm.is_open
