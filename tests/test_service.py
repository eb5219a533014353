import database


def test_root_reports_service_health(client):
    assert client.get("/").json() == {"service": "LinkSpark API", "status": "ok"}


def test_database_diagnostics_report_connected_store(client, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "mongodb://localhost:27017")
    monkeypatch.setenv("DATABASE_NAME", "linkspark_test")

    body = client.get("/test").json()

    assert body["backend"] == "✅ Running"
    assert body["database"] == "✅ Connected & Working"
    assert body["connection_status"] == "Connected"
    assert body["database_url"] == "✅ Set"
    assert body["database_name"] == "✅ Set"
    assert "profile" in body["collections"]
    assert len(body["collections"]) <= 10


def test_database_diagnostics_without_store(client, monkeypatch):
    monkeypatch.setattr(database, "db", None)

    body = client.get("/test").json()

    assert body["database"] == "❌ Not Available"
    assert body["connection_status"] == "Not Connected"
    assert body["collections"] == []
