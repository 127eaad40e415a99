from __future__ import annotations

import pytest
from sqlalchemy import func, inspect, select

from checksheet import store
from checksheet.models import TemplateFieldModel, TemplateImageModel
from conftest import PNG_BYTES, PREFIX, field_config, png_upload, template_payload


def _versions(client, template_id):
    response = client.get(f"{PREFIX}/templates/{template_id}/versions")
    assert response.status_code == 200
    return response.json()["versions"]


def test_publish_creates_version_one_table(client, publish):
    body = publish("Line check", field_config("Temperature", "number"), field_config("Operator", "text"))

    assert body["success"] is True
    assert body["version"] == 1
    assert body["table_name"] == f"checksheet_{body['template_id']}_1"
    assert body["warnings"] == []

    columns = {c["name"] for c in inspect(client.app.state.storage.engine).get_columns(body["table_name"])}
    assert {"id", "user_id", "submitted_at", "template_version", "original_submission_id"} <= columns
    assert {"temperature", "operator"} <= columns


def test_publish_requires_name(client):
    response = client.post(f"{PREFIX}/templates", json={"name": "  ", "field_configurations": {}})

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "Form name is required"}


def test_publish_warns_about_unusable_field_names(publish):
    body = publish("Odd names", field_config("###", "text", "f1"), field_config("Weight", "number", "f2"))

    assert len(body["warnings"]) == 1
    assert "###" in body["warnings"][0]


def test_submission_round_trip(client, publish, submit):
    template_id = publish("Round trip", field_config("Temperature", "number"))["template_id"]

    first = submit(template_id, {"temperature": "42"})
    second = submit(template_id, {"TEMPERATURE": ""})
    assert first.status_code == 200, first.text
    assert first.json()["fields_mapped"] == 1
    assert second.status_code == 200

    rows = client.get(f"{PREFIX}/templates/{template_id}/submissions/all").json()["submissions"]
    values = sorted(rows, key=lambda row: row["id"])
    assert values[0]["temperature"] == 42
    assert values[1]["temperature"] is None
    assert all(row["version"] == 1 and row["template_id"] == template_id for row in rows)


def test_submission_with_no_matching_fields_is_rejected(publish, submit):
    template_id = publish("Strict", field_config("Temperature", "number"))["template_id"]

    response = submit(template_id, {"humidity": 10, "pressure": 3})
    body = response.json()

    assert response.status_code == 400
    assert body["message"] == "No valid fields to insert. Check field names."
    assert body["debug"]["submitted_keys"] == ["humidity", "pressure"]
    assert "temperature" in body["debug"]["existing_columns"]


def test_submission_validation(client, submit):
    assert client.post(f"{PREFIX}/submissions", json={"template_id": 1, "data": {}}).status_code == 400
    assert submit(999, {"a": 1}).status_code == 404


def test_non_breaking_update_adds_columns_in_place(client, publish, submit):
    created = publish("Grow", field_config("Weight", "number", "f1"))
    template_id = created["template_id"]

    response = client.put(
        f"{PREFIX}/templates/{template_id}",
        json=template_payload(
            "Grow",
            field_config("Weight", "calculation", "f1"),
            field_config("Shift", "text", "f2"),
        ),
    )
    body = response.json()

    assert response.status_code == 200, response.text
    assert body["is_new_version"] is False
    assert body["added_columns"] == ["shift"]
    assert body["changes"][0]["breakingChange"] is False
    assert submit(template_id, {"shift": "night", "weight": "1.5"}).status_code == 200
    assert len(_versions(client, template_id)) == 1


def test_breaking_update_forks_and_archives(client, publish, submit):
    created = publish(
        "Furnace",
        field_config("Reading", "number", "f1"),
        field_config("Operator", "text", "f2"),
    )
    v1 = created["template_id"]
    assert submit(v1, {"reading": "12.5", "operator": "Ann"}).status_code == 200

    response = client.put(
        f"{PREFIX}/templates/{v1}",
        json=template_payload(
            "Furnace",
            field_config("Reading", "date", "f1"),
            field_config("Operator", "text", "f2"),
        ),
    )
    body = response.json()

    assert response.status_code == 200, response.text
    assert body["is_new_version"] is True
    assert body["version"] == 2
    assert body["parent_template_id"] == v1
    assert body["table_name"] == f"checksheet_{v1}_2"
    assert body["migrated_rows"] == 1
    assert body["changes"] == [
        {"fieldId": "f1", "fieldName": "Reading", "oldType": "number", "newType": "date", "breakingChange": True}
    ]
    v2 = body["template_id"]

    listed = client.get(f"{PREFIX}/templates").json()["templates"]
    assert [t["id"] for t in listed] == [v2]
    archived = client.get(f"{PREFIX}/templates", params={"include_archived": "true"}).json()["templates"]
    assert {t["id"] for t in archived} == {v1, v2}

    old = client.get(f"{PREFIX}/templates/{v1}").json()["template"]
    assert old["is_active"] is False
    assert old["archived_at"] is not None
    assert old["version_count"] == 2

    assert submit(v1, {"operator": "Bob"}).status_code == 404
    assert submit(v2, {"reading": "2024-05-01", "operator": "Cy"}).status_code == 200

    history = client.get(f"{PREFIX}/templates/{v1}/submissions/all").json()
    assert history["total"] == 3
    by_version = {}
    for row in history["submissions"]:
        by_version.setdefault(row["version"], []).append(row)
    assert len(by_version[1]) == 1
    migrated = [row for row in by_version[2] if row["original_submission_id"] is not None]
    assert len(migrated) == 1
    assert migrated[0]["operator"] == "Ann"
    assert migrated[0]["reading"] is None
    assert any(row["reading"] == "2024-05-01" for row in by_version[2])


def test_boolean_to_number_forks_instead_of_dropping_values(client, publish, submit):
    v1 = publish("Flags", field_config("Flag", "boolean", "f1"))["template_id"]

    response = client.put(
        f"{PREFIX}/templates/{v1}",
        json=template_payload("Flags", field_config("Flag", "number", "f1")),
    )
    body = response.json()

    assert response.status_code == 200, response.text
    assert body["is_new_version"] is True
    assert body["changes"][0]["breakingChange"] is True
    stored = submit(body["template_id"], {"flag": "5"})
    assert stored.status_code == 200, stored.text
    assert stored.json()["fields_mapped"] == 1
    rows = client.get(f"{PREFIX}/templates/{v1}/submissions/all").json()["submissions"]
    assert [row["flag"] for row in rows] == [5]


def test_submission_accepts_zero_user_id(client, publish, submit):
    template_id = publish("Anonymous", field_config("Note", "text"))["template_id"]

    response = submit(template_id, {"note": "ok"}, user_id=0)

    assert response.status_code == 200, response.text
    rows = client.get(f"{PREFIX}/templates/{template_id}/submissions/all").json()["submissions"]
    assert rows[0]["user_id"] == 0


def test_updating_archived_version_is_rejected(client, publish):
    v1 = publish("Archive", field_config("Count", "number", "f1"))["template_id"]
    fork = client.put(f"{PREFIX}/templates/{v1}", json=template_payload("Archive", field_config("Count", "text", "f1")))
    assert fork.json()["is_new_version"] is True

    response = client.put(f"{PREFIX}/templates/{v1}", json=template_payload("Archive", field_config("Count", "number", "f1")))

    assert response.status_code == 400
    assert response.json()["active_template_id"] == fork.json()["template_id"]


def test_versions_are_monotonic_with_single_active(client, publish):
    current = publish("Flip", field_config("Value", "number", "f1"))["template_id"]
    for field_type in ("text", "number", "date"):
        response = client.put(
            f"{PREFIX}/templates/{current}",
            json=template_payload("Flip", field_config("Value", field_type, "f1")),
        )
        assert response.json()["is_new_version"] is True
        current = response.json()["template_id"]

    versions = _versions(client, current)
    assert [v["version"] for v in versions] == [1, 2, 3, 4]
    assert [v["is_active"] for v in versions] == [False, False, False, True]
    assert len({v["table_name"] for v in versions}) == 4


def test_delete_removes_whole_lineage(client, publish):
    v1 = publish("Doomed", field_config("Value", "number", "f1"), images={"logo.png": png_upload("logo.png")})["template_id"]
    v2 = client.put(f"{PREFIX}/templates/{v1}", json=template_payload("Doomed", field_config("Value", "text", "f1"))).json()
    v3 = client.put(
        f"{PREFIX}/templates/{v2['template_id']}",
        json=template_payload("Doomed", field_config("Value", "number", "f1")),
    ).json()
    table_names = [f"checksheet_{v1}_1", v2["table_name"], v3["table_name"]]

    response = client.delete(f"{PREFIX}/templates/{v2['template_id']}")

    assert response.status_code == 200
    assert response.json()["versions_deleted"] == 3
    for template_id in (v1, v2["template_id"], v3["template_id"]):
        assert client.get(f"{PREFIX}/templates/{template_id}").status_code == 404
    engine = client.app.state.storage.engine
    inspector = inspect(engine)
    assert not any(inspector.has_table(name) for name in table_names)
    ids = [v1, v2["template_id"], v3["template_id"]]
    with engine.connect() as conn:
        for model in (TemplateFieldModel, TemplateImageModel):
            orphans = conn.execute(
                select(func.count()).select_from(model).where(model.template_id.in_(ids))
            ).scalar_one()
            assert orphans == 0, model.__tablename__


def test_deleted_ids_and_table_names_are_not_reused(client, publish):
    first = publish("One", field_config("Value", "number", "f1"), images={"a.png": png_upload("a.png")})
    first_image = client.get(f"{PREFIX}/templates/{first['template_id']}/images").json()["images"][0]
    assert client.delete(f"{PREFIX}/templates/{first['template_id']}").status_code == 200

    second = publish("Two", field_config("Value", "number", "f1"), images={"a.png": png_upload("a.png")})
    second_image = client.get(f"{PREFIX}/templates/{second['template_id']}/images").json()["images"][0]

    assert second["template_id"] > first["template_id"]
    assert second["table_name"] != first["table_name"]
    assert second_image["id"] > first_image["id"]


def test_failed_fork_keeps_previous_version_active(client, publish, submit, monkeypatch):
    v1 = publish("Fragile", field_config("Reading", "number", "f1"))["template_id"]
    assert submit(v1, {"reading": "3"}).status_code == 200

    def broken_copy(*args, **kwargs):
        raise RuntimeError("field copy failed")

    monkeypatch.setattr(store, "copy_fields", broken_copy)
    with pytest.raises(RuntimeError):
        client.put(
            f"{PREFIX}/templates/{v1}",
            json=template_payload("Fragile", field_config("Reading", "date", "f1")),
        )

    versions = _versions(client, v1)
    assert [(v["id"], v["is_active"]) for v in versions] == [(v1, True)]
    assert not inspect(client.app.state.storage.engine).has_table(f"checksheet_{v1}_2")
    fields = client.get(f"{PREFIX}/templates/{v1}/full").json()["template"]["field_configurations"]
    assert fields["f1"]["type"] == "number"
    assert submit(v1, {"reading": "4"}).status_code == 200


def test_images_are_stored_and_served(client, publish):
    html = '<div><img src="IMAGE_PLACEHOLDER:logo.png"></div>'
    template_id = publish(
        "Pictures",
        field_config("Note", "text"),
        html_content=html,
        images={"assets/logo.png": png_upload("logo.png")},
    )["template_id"]

    template = client.get(f"{PREFIX}/templates/{template_id}").json()["template"]
    assert template["image_count"] == 1
    image = template["images"][0]
    assert f'src="{PREFIX}/templates/{template_id}/images/{image["id"]}"' in template["html_content"]

    response = client.get(f"{PREFIX}/templates/{template_id}/images/{image['id']}")
    assert response.status_code == 200
    assert response.content == PNG_BYTES
    assert response.headers["content-type"] == "image/png"
    assert response.headers["cache-control"] == "public, max-age=31536000"
    assert response.headers["etag"] == f'"{image["id"]}-{len(PNG_BYTES)}"'

    full = client.get(f"{PREFIX}/templates/{template_id}/full").json()["template"]
    assert full["images"]["logo.png"]["id"] == image["id"]
    assert full["field_configurations"]["Note"]["instanceId"] == "Note"
    assert full["field_configurations"]["Note"]["bgColor"] == "#ffffff"

    assert client.get(f"{PREFIX}/templates/{template_id}/images/99999").status_code == 404


def test_fork_carries_images(client, publish):
    v1 = publish(
        "Carry",
        field_config("Value", "number", "f1"),
        html_content='<img src="IMAGE_PLACEHOLDER:a.png">',
        images={"a.png": png_upload("a.png")},
    )["template_id"]
    v2 = client.put(
        f"{PREFIX}/templates/{v1}",
        json=template_payload("Carry", field_config("Value", "text", "f1"), images={"b.png": png_upload("b.png")}),
    ).json()["template_id"]

    images = client.get(f"{PREFIX}/templates/{v2}/images").json()["images"]

    assert sorted(image["filename"] for image in images) == ["a.png", "b.png"]
    assert sorted(image["position_index"] for image in images) == [0, 1]


def test_access_control_round_trip(client, publish):
    template_id = publish("Guarded", field_config("Value", "text", "f1"))["template_id"]

    saved = client.post(
        f"{PREFIX}/templates/{template_id}/access-control",
        json={
            "groups": [3, "4"],
            "field_permissions": {
                "f1|||3": {"canView": True, "canEdit": False},
                "broken-key": {"canView": False},
                "f1|||abc": {},
            },
            "default_access": "view",
        },
    )
    assert saved.status_code == 200

    policy = client.get(f"{PREFIX}/templates/{template_id}/access-control").json()["access_control"]
    assert policy["groups"] == [3, 4]
    assert policy["field_permissions"] == {"f1|||3": {"canView": True, "canEdit": False, "canDelete": False}}
    assert policy["default_access"] == "view"
    assert policy["updated_at"]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
