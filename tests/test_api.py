from conftest import bearer, garment_payload, yarn_payload
from security import TokenAuthority


def create_product(client, headers, **overrides) -> dict:
    response = client.post("/products", json=yarn_payload(**overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


# Registration and login

def test_register_login_and_browse(client):
    response = client.post("/auth/register", json={"email": "a@x.com", "name": "A", "password": "pw123456"})
    assert response.status_code == 201
    body = response.json()
    assert body["email"] == "a@x.com"
    assert body["role"] == "user"
    assert "password" not in body and "password_hash" not in body

    response = client.post("/auth/login", json={"email": "a@x.com", "password": "pw123456"})
    assert response.status_code == 200
    login = response.json()
    assert login["token_type"] == "bearer"
    assert login["user"]["email"] == "a@x.com"
    headers = bearer(login["access_token"])

    response = client.get("/products", headers=headers)
    assert response.status_code == 200
    assert response.json() == []

    me = client.get("/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["id"] == body["id"]


def test_register_without_password_is_rejected(client):
    response = client.post("/auth/register", json={"email": "nopass@x.com", "name": "N"})
    assert response.status_code == 400


def test_register_duplicate_email_conflicts(client):
    payload = {"email": "dup@x.com", "name": "D", "password": "pw123456"}
    assert client.post("/auth/register", json=payload).status_code == 201
    assert client.post("/auth/register", json=payload).status_code == 409


def test_login_with_bad_credentials(client):
    client.post("/auth/register", json={"email": "b@x.com", "password": "pw123456"})

    wrong = client.post("/auth/login", json={"email": "b@x.com", "password": "not-it-at-all"})
    unknown = client.post("/auth/login", json={"email": "nobody@x.com", "password": "pw123456"})

    assert wrong.status_code == 401
    assert unknown.status_code == 401
    assert wrong.json() == unknown.json()


# Authentication and roles

def test_delete_requires_admin(client, user_headers, admin_headers):
    assert client.delete("/products/42").status_code == 401
    assert client.delete("/products/42", headers=user_headers).status_code == 403

    response = client.delete("/products/42", headers=admin_headers)
    assert response.status_code == 404
    assert response.json() == {"detail": "product with ID 42 not found"}


def test_unauthorized_responses_name_the_problem(client):
    missing = client.get("/me")
    assert missing.status_code == 401
    assert missing.json()["detail"] == "Authorization header is required"
    assert missing.headers["WWW-Authenticate"] == "Bearer"

    malformed = client.get("/me", headers={"Authorization": "Token abc"})
    assert malformed.status_code == 401
    assert malformed.json()["detail"] == "Invalid Authorization header format"

    invalid = client.get("/me", headers=bearer("not.a.token"))
    assert invalid.status_code == 401
    assert invalid.json()["detail"] == "invalid token"


def test_token_from_another_key_is_rejected(client, app):
    forged = TokenAuthority("attacker-secret", issuer=app.state.settings.jwt_issuer).issue(1, "x@x.com", "admin")
    assert client.get("/users", headers=bearer(forged)).status_code == 401


def test_user_management_is_admin_only(client, user_headers, admin_headers):
    assert client.get("/users", headers=user_headers).status_code == 403

    response = client.post(
        "/users",
        json={"email": "staff@x.com", "name": "Staff", "password": "pw123456", "role": "admin"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    staff = response.json()
    assert staff["role"] == "admin"

    listed = client.get("/users", headers=admin_headers).json()
    assert {u["email"] for u in listed} >= {"admin@example.com", "buyer@example.com", "staff@x.com"}
    assert all("password_hash" not in u for u in listed)

    response = client.put(
        f"/users/{staff['id']}",
        json={"email": "staff@x.com", "name": "Staff Member", "role": "user"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["role"] == "user"

    login = client.post("/auth/login", json={"email": "staff@x.com", "password": "pw123456"})
    assert login.status_code == 200

    assert client.delete(f"/users/{staff['id']}", headers=admin_headers).status_code == 204
    assert client.get(f"/users/{staff['id']}", headers=admin_headers).status_code == 404


# Products

def test_product_crud(client, admin_headers):
    created = create_product(client, admin_headers)
    assert created["id"] > 0
    assert created["price"] == 12.5
    assert created["created_at"]

    first = client.get(f"/products/{created['id']}")
    second = client.get(f"/products/{created['id']}")
    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()

    updated = client.put(
        f"/products/{created['id']}",
        json=yarn_payload(price=14.0, color="red"),
        headers=admin_headers,
    )
    assert updated.status_code == 200
    assert updated.json()["price"] == 14.0
    assert client.get(f"/products/{created['id']}").json()["color"] == "red"

    deleted = client.delete(f"/products/{created['id']}", headers=admin_headers)
    assert deleted.status_code == 204
    assert deleted.content == b""
    assert client.get(f"/products/{created['id']}").status_code == 404


def test_product_type_rules(client, admin_headers):
    response = client.post("/products", json=yarn_payload(composition=None), headers=admin_headers)
    assert response.status_code == 400
    assert "composition" in response.json()["detail"]

    response = client.post("/products", json=garment_payload(size=None), headers=admin_headers)
    assert response.status_code == 400

    assert client.post("/products", json=garment_payload(), headers=admin_headers).status_code == 201


def test_bad_input_is_400(client, admin_headers):
    response = client.post(
        "/products",
        content=b"{not json",
        headers={**admin_headers, "Content-Type": "application/json"},
    )
    assert response.status_code == 400

    assert client.get("/products/abc").status_code == 400
    assert client.post("/products", json={"name": "No price"}, headers=admin_headers).status_code == 400


def test_search(client, admin_headers):
    for i in range(3):
        create_product(client, admin_headers, name=f"Merino {i}", color="Blue")
    create_product(client, admin_headers, name="Cotton", color="white")

    response = client.get("/products/search", params={"name": "merino", "color": "blue", "page": 2, "limit": 2})
    assert response.status_code == 200
    page = response.json()
    assert page["total_count"] == 3
    assert page["page"] == 2
    assert page["limit"] == 2
    assert [p["name"] for p in page["items"]] == ["Merino 2"]

    assert client.get("/products/search", params={"page": 0}).status_code == 400
    assert client.get("/products/search", params={"limit": 500}).status_code == 400
    assert client.get("/products/search", params={"type": "hat"}).status_code == 400


# Categories

def test_categories(client, user_headers, admin_headers):
    assert client.post("/categories", json={"name": "Yarn"}, headers=user_headers).status_code == 403

    response = client.post("/categories", json={"name": "Yarn", "type": "yarn"}, headers=admin_headers)
    assert response.status_code == 201
    category = response.json()

    assert client.get("/categories").json() == [category]
    assert client.get(f"/categories/{category['id']}").json() == category


# Orders

def test_orders_are_private(client, user_headers, admin_headers):
    created = client.post("/orders", json={"total": 150.0}, headers=user_headers)
    assert created.status_code == 201
    order = created.json()
    assert order["status"] == "pending"
    assert order["total"] == 150.0

    other = client.post("/auth/register", json={"email": "other@x.com", "password": "pw123456"})
    other_login = client.post("/auth/login", json={"email": "other@x.com", "password": "pw123456"}).json()
    other_headers = bearer(other_login["access_token"])
    assert other.status_code == 201

    assert client.get(f"/orders/{order['id']}", headers=other_headers).status_code == 403
    assert client.get("/orders", headers=other_headers).json() == []
    assert client.delete(f"/orders/{order['id']}", headers=other_headers).status_code == 403

    assert client.get(f"/orders/{order['id']}", headers=user_headers).json() == order
    assert len(client.get("/orders", headers=admin_headers).json()) == 1
    assert client.get("/orders").status_code == 401


# Comments

def test_comments(client, user_headers, admin_headers):
    product = create_product(client, admin_headers)
    other = create_product(client, admin_headers, name="Other")

    assert client.post("/comments", json={"product_id": product["id"], "text": "Nice"}).status_code == 401

    response = client.post("/comments", json={"product_id": product["id"], "text": "Nice"}, headers=user_headers)
    assert response.status_code == 201
    comment = response.json()
    assert comment["user_id"] is not None

    client.post("/comments", json={"product_id": other["id"], "text": "Meh"}, headers=user_headers)

    listed = client.get("/comments", params={"product_id": product["id"]}).json()
    assert [c["id"] for c in listed] == [comment["id"]]
    assert len(client.get("/comments").json()) == 2
    assert client.delete(f"/comments/{comment['id']}", headers=admin_headers).status_code == 204


# Pipeline

def test_cors_headers_on_every_response(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.headers["Access-Control-Allow-Origin"] == "https://petelka.shop"
    assert response.headers["Access-Control-Allow-Credentials"] == "true"
    assert "DELETE" in response.headers["Access-Control-Allow-Methods"]
    assert "Authorization" in response.headers["Access-Control-Allow-Headers"]

    failed = client.get("/products/999")
    assert failed.status_code == 404
    assert failed.headers["Access-Control-Allow-Origin"] == "https://petelka.shop"


def test_preflight_short_circuits(client):
    response = client.options("/products/42")
    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["Access-Control-Allow-Origin"] == "https://petelka.shop"

    # no token needed, even on admin-only routes
    assert client.options("/users").status_code == 200


def test_request_id_header(client):
    first = client.get("/").headers["X-Request-ID"]
    second = client.get("/").headers["X-Request-ID"]
    assert first and second and first != second


def test_health(client):
    assert client.get("/health").json() == {"backend": "ok", "database": "ok", "cache": "ok"}


def test_metrics_endpoint(client):
    client.get("/")
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "http_requests_total" in response.text
    assert 'method="GET"' in response.text


def test_out_of_range_ids_are_400(client, admin_headers):
    huge = "99999999999999999999"

    for response in (
        client.get(f"/products/{huge}"),
        client.delete(f"/products/{huge}", headers=admin_headers),
        client.put(f"/categories/{huge}", json={"name": "Yarn"}, headers=admin_headers),
        client.get("/products/0"),
        client.get("/comments", params={"product_id": huge}),
    ):
        assert response.status_code == 400
        assert response.headers["Access-Control-Allow-Origin"] == "https://petelka.shop"
        assert "detail" in response.json()


def test_unexpected_errors_stay_inside_the_pipeline(client, app, monkeypatch):
    def explode(ctx, item_id):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(app.state.services.products, "get", explode)
    response = client.get("/products/1")

    assert response.status_code == 500
    assert response.json() == {"detail": "internal server error"}
    assert "disk on fire" not in response.text
    assert response.headers["Access-Control-Allow-Origin"] == "https://petelka.shop"
    assert response.headers["X-Request-ID"]

    exposition = client.get("/metrics").text
    assert 'status="500"' in exposition
