PROFILE = {
    "name": "Supplier A",
    "description": "Weekly fabric feed",
    "mapping": {"Fabric Name": "title", "Yard Price": "retail_price"},
}


def _create(client, headers, **overrides):
    response = client.post("/api/mapping-profiles", headers=headers, json={**PROFILE, **overrides})
    assert response.status_code == 201
    return response.json()


def test_list_includes_builtins(client, admin_headers):
    created = _create(client, admin_headers)
    listed = client.get("/api/mapping-profiles", headers=admin_headers).json()
    ids = [profile["id"] for profile in listed]
    assert ids[0] == created["id"]
    assert {"builtin-shopify", "builtin-woocommerce", "builtin-fabric"} <= set(ids)

    private_only = client.get(
        "/api/mapping-profiles", headers=admin_headers, params={"is_shared": "false"}
    ).json()
    assert [profile["id"] for profile in private_only] == [created["id"]]

    searched = client.get("/api/mapping-profiles", headers=admin_headers, params={"search": "fabric"}).json()
    assert {profile["id"] for profile in searched} == {created["id"], "builtin-fabric"}


def test_get_builtin_and_missing(client, admin_headers):
    response = client.get("/api/mapping-profiles/builtin-fabric", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["is_builtin"] is True
    assert response.json()["mapping"]["Price per Yard"] == "retail_price"

    response = client.get("/api/mapping-profiles/mp_missing", headers=admin_headers)
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "mapping_profile_not_found"


def test_create_rejects_empty_target(client, admin_headers):
    response = client.post(
        "/api/mapping-profiles",
        headers=admin_headers,
        json={"name": "Bad", "mapping": {"Name": " "}},
    )
    assert response.status_code == 422


def test_update_and_default_swap(client, admin_headers):
    first = _create(client, admin_headers, is_default=True)
    second = _create(client, admin_headers, name="Supplier B", is_default=True)

    assert client.get(f"/api/mapping-profiles/{first['id']}", headers=admin_headers).json()["is_default"] is False

    response = client.patch(
        f"/api/mapping-profiles/{first['id']}",
        headers=admin_headers,
        json={"is_default": True, "name": "Supplier A v2"},
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Supplier A v2"
    assert client.get(f"/api/mapping-profiles/{second['id']}", headers=admin_headers).json()["is_default"] is False


def test_other_users_cannot_modify(client, admin_headers):
    shared = _create(client, admin_headers, is_shared=True)
    other = {**admin_headers, "X-User-Id": "user_2"}

    assert client.get(f"/api/mapping-profiles/{shared['id']}", headers=other).status_code == 200
    response = client.patch(f"/api/mapping-profiles/{shared['id']}", headers=other, json={"name": "Mine"})
    assert response.status_code == 403
    assert client.delete(f"/api/mapping-profiles/{shared['id']}", headers=other).status_code == 403


def test_builtin_is_read_only(client, admin_headers):
    response = client.patch("/api/mapping-profiles/builtin-shopify", headers=admin_headers, json={"name": "x"})
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "builtin_profile_read_only"


def test_delete(client, admin_headers):
    created = _create(client, admin_headers)
    assert client.delete(f"/api/mapping-profiles/{created['id']}", headers=admin_headers).status_code == 204
    assert client.get(f"/api/mapping-profiles/{created['id']}", headers=admin_headers).status_code == 404


def test_delete_in_use_conflicts(client, admin_headers):
    created = _create(client, admin_headers)
    response = client.post(
        "/api/imports/jobs",
        headers={**admin_headers, "Idempotency-Key": "k1"},
        files={"file": ("products.csv", b"Fabric Name\nLinen\n", "text/csv")},
        data={"mapping_profile_id": created["id"]},
    )
    assert response.status_code == 202

    response = client.delete(f"/api/mapping-profiles/{created['id']}", headers=admin_headers)
    assert response.status_code == 409
    assert response.json()["detail"]["details"] == {"active_jobs": 1}


def test_duplicate_export_import(client, admin_headers):
    created = _create(client, admin_headers)

    copy = client.post(
        f"/api/mapping-profiles/{created['id']}/duplicate",
        headers=admin_headers,
        json={"name": "Supplier A copy"},
    )
    assert copy.status_code == 201
    assert copy.json()["metadata"]["duplicated_from"] == created["id"]

    exported = client.get(f"/api/mapping-profiles/{created['id']}/export", headers=admin_headers)
    assert exported.status_code == 200
    data = exported.json()["data"]

    imported = client.post(
        "/api/mapping-profiles/import",
        headers={**admin_headers, "X-User-Id": "user_2"},
        json={"data": data},
    )
    assert imported.status_code == 201
    body = imported.json()
    assert body["name"] == "Supplier A (Imported)"
    assert body["owner_id"] == "user_2"
    assert body["mapping"] == PROFILE["mapping"]

    response = client.post("/api/mapping-profiles/import", headers=admin_headers, json={"data": "{}"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_profile_export"
