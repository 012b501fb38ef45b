from flask import Flask

from subledger.security import init_security


def _secured_app():
    app = Flask(__name__)
    init_security(app)

    @app.get("/ping")
    def ping():
        return {"ok": True}

    return app


def test_security_headers_on_https():
    client = _secured_app().test_client()
    resp = client.get("/ping", base_url="https://api.example.test")

    assert resp.status_code == 200
    assert "default-src 'none'" in resp.headers["Content-Security-Policy"]
    assert "frame-ancestors 'none'" in resp.headers["Content-Security-Policy"]
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Referrer-Policy"] == "no-referrer"
    assert "max-age" in resp.headers["Strict-Transport-Security"]


def test_plain_http_is_redirected():
    client = _secured_app().test_client()
    resp = client.get("/ping", base_url="http://api.example.test")

    assert resp.status_code in (301, 302)
    assert resp.headers["Location"].startswith("https://")
