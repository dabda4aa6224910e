import database
import main
from main import seed_demo_products


def test_root(client):
    assert client.get("/").json() == {"message": "Duha Threads API"}


def test_database_probe(client):
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["connection_status"] == "Connected"
    assert body["database_name"] == "duha_test"


def test_health_connected(client):
    assert client.get("/api/health").json() == {"status": "ok", "db": "connected"}


def test_health_without_database(client, monkeypatch):
    monkeypatch.setattr(database, "db", None)
    assert client.get("/api/health").json() == {"status": "ok", "db": "no-uri"}
    assert client.get("/api/products").status_code == 503


def test_seed_demo_products_once(client):
    assert seed_demo_products() == len(main.DEMO_PRODUCTS)
    assert seed_demo_products() == 0
    products = client.get("/api/products").json()
    assert products["total"] == len(main.DEMO_PRODUCTS)
    assert client.get("/api/products/hero").json()["product"]["slug"] == "classic-crew-tee"
