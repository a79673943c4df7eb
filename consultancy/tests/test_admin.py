from consultancy.models import ContactSubmission, Faq, Order, Pillar, User, db

from .conftest import ADMIN_EMAIL, login, register, service_id


def _user_id(app, email):
    with app.app_context():
        return User.query.filter_by(email=email).one().id


def _submit_contact(client, **overrides):
    payload = {
        "name": "Sam Taylor",
        "email": "sam@example.com",
        "subject": "Strategy help",
        "message": "We would like to discuss a strategic assessment.",
    }
    payload.update(overrides)
    return client.post("/api/contact", json=payload)


def test_dashboard_stats(admin_client, client):
    _submit_contact(client)
    stats = admin_client.get("/api/admin/dashboard/stats").get_json()["data"]
    assert stats["contacts"] == {"total": 1, "new": 1}
    assert stats["users"]["total"] == 1
    assert stats["orders"]["total"] == 0
    assert stats["revenue"] == 0.0
    assert stats["recent_contacts"][0]["email"] == "sam@example.com"


def test_create_pillar_generates_slug_and_rejects_duplicates(admin_client):
    response = admin_client.post("/api/admin/pillars", json={"name": "Research Insight", "tagline": "Data-led"})
    assert response.status_code == 201
    pillar = response.get_json()["data"]
    assert pillar["slug"] == "research-insight"
    assert response.get_json()["message"] == "Pillar created"

    duplicate = admin_client.post("/api/admin/pillars", json={"name": "research  insight"})
    assert duplicate.status_code == 409

    bad_slug = admin_client.post("/api/admin/pillars", json={"name": "Other", "slug": "Not Valid!"})
    assert bad_slug.status_code == 422
    assert "slug" in bad_slug.get_json()["errors"]

    short_name = admin_client.post("/api/admin/pillars", json={"name": "X"})
    assert short_name.status_code == 422


def test_update_pillar_keeps_slug_unless_given(admin_client):
    pillar_id = admin_client.post("/api/admin/pillars", json={"name": "Coaching"}).get_json()["data"]["id"]
    renamed = admin_client.put(f"/api/admin/pillars/{pillar_id}", json={"name": "Executive Coaching"})
    assert renamed.get_json()["data"]["slug"] == "coaching"

    reslugged = admin_client.patch(f"/api/admin/pillars/{pillar_id}", json={"slug": "executive-coaching"})
    assert reslugged.get_json()["data"]["slug"] == "executive-coaching"

    clash = admin_client.patch(f"/api/admin/pillars/{pillar_id}", json={"slug": "education-support"})
    assert clash.status_code == 409


def test_pillar_listing_counts_services_and_faqs(admin_client):
    pillars = admin_client.get("/api/admin/pillars").get_json()["data"]
    business = next(p for p in pillars if p["slug"] == "business-consultancy")
    assert business["total_services"] == 5
    assert business["faqs_count"] == 3

    detail = admin_client.get(f"/api/admin/pillars/{business['id']}").get_json()["data"]
    assert len(detail["services"]) == 5


def test_pillar_with_services_cannot_be_deleted(admin_client, app):
    with app.app_context():
        pillar_id = Pillar.query.filter_by(slug="business-consultancy").one().id
    response = admin_client.delete(f"/api/admin/pillars/{pillar_id}")
    assert response.status_code == 409


def test_deleting_empty_pillar_removes_faqs_and_detaches_contacts(admin_client, client, app):
    pillar_id = admin_client.post("/api/admin/pillars", json={"name": "Workshops"}).get_json()["data"]["id"]
    admin_client.post(
        "/api/admin/faqs",
        json={"pillar_id": pillar_id, "question": "How long is a workshop?", "answer": "<p>Half a day.</p>"},
    )
    assert _submit_contact(client, pillarId=pillar_id).status_code == 201

    response = admin_client.delete(f"/api/admin/pillars/{pillar_id}")
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Pillar, pillar_id) is None
        assert Faq.query.filter_by(pillar_id=pillar_id).count() == 0
        assert ContactSubmission.query.one().pillar_id is None


def test_toggle_pillar_hides_it_from_storefront(admin_client, client, app):
    with app.app_context():
        pillar_id = Pillar.query.filter_by(slug="education-support").one().id
    toggled = admin_client.patch(f"/api/admin/pillars/{pillar_id}/toggle-active")
    assert toggled.get_json()["message"] == "Pillar deactivated"
    assert client.get("/api/pillars/education-support").status_code == 404
    slugs = {service["slug"] for service in client.get("/api/services").get_json()["data"]}
    assert "curriculum-review" not in slugs


def test_reorder_pillars(admin_client, app):
    with app.app_context():
        ids = [p.id for p in Pillar.query.order_by(Pillar.sort_order).all()]
    response = admin_client.post("/api/admin/pillars/reorder", json={"ids": list(reversed(ids))})
    assert response.status_code == 200
    assert [p["sort_order"] for p in response.get_json()["data"]] == [1, 2]
    with app.app_context():
        assert [p.id for p in Pillar.query.order_by(Pillar.sort_order).all()] == list(reversed(ids))

    assert admin_client.post("/api/admin/pillars/reorder", json={"ids": [ids[0], 9999]}).status_code == 404
    assert admin_client.post("/api/admin/pillars/reorder", json={"ids": ["x"]}).status_code == 422


def test_service_crud(admin_client, client, app):
    with app.app_context():
        pillar_id = Pillar.query.filter_by(slug="business-consultancy").one().id
    created = admin_client.post(
        "/api/admin/services",
        json={
            "pillar_id": pillar_id,
            "type": "one_off",
            "title": "Board Effectiveness Review",
            "price_from": "1250.50",
            "details": "<p>Scope</p><script>alert(1)</script>",
            "is_featured": True,
        },
    )
    assert created.status_code == 201
    service = created.get_json()["data"]
    assert service["slug"] == "board-effectiveness-review"
    assert service["price_from"] == 1250.5
    assert "<script>" not in service["details"]
    assert service["cta"]["action"] == "add_to_cart"

    featured = {s["slug"] for s in client.get("/api/services/featured").get_json()["data"]}
    assert "board-effectiveness-review" in featured

    updated = admin_client.put(f"/api/admin/services/{service['id']}", json={"type": "subscription"})
    assert updated.get_json()["data"]["cta"]["action"] == "contact"

    listed = admin_client.get(f"/api/admin/services?pillar_id={pillar_id}&type=subscription").get_json()["data"]
    assert "board-effectiveness-review" in {s["slug"] for s in listed}
    assert admin_client.get("/api/admin/services?type=monthly").status_code == 422

    deleted = admin_client.delete(f"/api/admin/services/{service['id']}")
    assert deleted.get_json()["message"] == "Service deleted"
    assert client.get("/api/services/board-effectiveness-review").status_code == 404


def test_service_validation(admin_client):
    response = admin_client.post(
        "/api/admin/services",
        json={"pillar_id": 999, "type": "weekly", "title": "A", "price_from": -1},
    )
    assert response.status_code == 422
    assert set(response.get_json()["errors"]) >= {"pillar_id", "type", "title", "price_from"}


def test_faq_crud_and_global_filter(admin_client, client):
    created = admin_client.post(
        "/api/admin/faqs",
        json={"question": "Do you work internationally?", "answer": "Yes, we do.", "category": "general"},
    )
    assert created.status_code == 201
    faq = created.get_json()["data"]
    assert faq["is_global"] is True

    global_faqs = admin_client.get("/api/admin/faqs?pillar_id=global").get_json()["data"]
    assert all(item["pillar_id"] is None for item in global_faqs)
    assert faq["id"] in {item["id"] for item in global_faqs}

    public = client.get("/api/faqs/global").get_json()["data"]
    assert faq["id"] in {item["id"] for item in public}

    toggled = admin_client.post(f"/api/admin/faqs/{faq['id']}/toggle-active")
    assert toggled.get_json()["data"]["is_active"] is False
    assert faq["id"] not in {item["id"] for item in client.get("/api/faqs/global").get_json()["data"]}

    assert admin_client.post("/api/admin/faqs", json={"question": "Hi?", "answer": ""}).status_code == 422
    assert admin_client.delete(f"/api/admin/faqs/{faq['id']}").status_code == 200

    numeric = admin_client.post("/api/admin/faqs", json={"question": "How many pillars exist?", "answer": 2})
    assert numeric.status_code == 201
    assert numeric.get_json()["data"]["answer"] == "2"


def test_contact_submission_management(admin_client, client):
    first = _submit_contact(client).get_json()["data"]["id"]
    second = _submit_contact(client, name="Alex Morgan", email="alex@example.com").get_json()["data"]["id"]

    search = admin_client.get("/api/admin/contact-submissions?search=alex").get_json()
    assert [item["id"] for item in search["data"]] == [second]

    updated = admin_client.patch(f"/api/admin/contact-submissions/{first}/status", json={"status": "resolved"})
    assert updated.get_json()["data"]["status"] == "resolved"
    assert admin_client.patch(f"/api/admin/contact-submissions/{first}/status", json={"status": "done"}).status_code == 422

    stats = admin_client.get("/api/admin/contact-submissions/stats").get_json()["data"]
    assert stats["total"] == 2
    assert stats["resolved"] == 1
    assert stats["new"] == 1

    resolved = admin_client.get("/api/admin/contact-submissions?status=resolved").get_json()
    assert resolved["meta"]["pagination"]["total"] == 1

    bulk = admin_client.post("/api/admin/contact-submissions/bulk-delete", json={"ids": [first, second, 777]})
    assert bulk.get_json()["data"] == {"deleted": 2, "failed": 1}


def test_user_management_guards(admin_client, app):
    register(app.test_client())
    admin_id = _user_id(app, ADMIN_EMAIL)
    customer_id = _user_id(app, "jane@example.com")

    own = admin_client.patch(f"/api/admin/users/{admin_id}/status", json={"status": "inactive"})
    assert own.status_code == 400
    assert admin_client.delete(f"/api/admin/users/{admin_id}").status_code == 400

    customers = admin_client.get("/api/admin/users?role=customer").get_json()
    assert [user["email"] for user in customers["data"]] == ["jane@example.com"]

    deactivated = admin_client.patch(f"/api/admin/users/{customer_id}/status", json={"is_active": False})
    assert deactivated.get_json()["message"] == "User deactivated"
    assert login(app.test_client(), "jane@example.com", "Customer123").status_code == 401

    stats = admin_client.get("/api/admin/users/stats").get_json()["data"]
    assert stats["inactive"] == 1
    assert stats["admins"] == 1

    bulk = admin_client.post("/api/admin/users/bulk-delete", json={"ids": [admin_id, customer_id]})
    assert bulk.get_json()["data"] == {"deleted": 1, "failed": 1}


def test_deleting_user_keeps_their_orders(admin_client, customer_client, app):
    customer_client.post(
        "/api/orders",
        json={
            "customerName": "Jane Customer",
            "customerEmail": "jane@example.com",
            "items": [{"serviceId": service_id(app, "curriculum-review"), "quantity": 1}],
        },
    )
    customer_id = _user_id(app, "jane@example.com")
    detail = admin_client.get(f"/api/admin/users/{customer_id}").get_json()["data"]
    assert detail["orders_count"] == 1

    assert admin_client.delete(f"/api/admin/users/{customer_id}").status_code == 200
    with app.app_context():
        order = Order.query.one()
        assert order.user_id is None
        assert order.customer_email == "jane@example.com"


def test_only_super_admin_can_change_super_admin(app):
    with app.app_context():
        admin = User(name="Second Admin", email="second@consultancy.com", role="admin")
        admin.set_password("Second123")
        db.session.add(admin)
        db.session.commit()
    super_admin_id = _user_id(app, ADMIN_EMAIL)

    second = app.test_client()
    assert login(second, "second@consultancy.com", "Second123").status_code == 200
    response = second.patch(f"/api/admin/users/{super_admin_id}/status", json={"status": "inactive"})
    assert response.status_code == 403


def test_plain_admin_cannot_reactivate_super_admin(app):
    with app.app_context():
        admin = User(name="Second Admin", email="second@consultancy.com", role="admin")
        admin.set_password("Second123")
        dormant = User(name="Dormant Owner", email="owner@consultancy.com", role="super_admin", is_active=False)
        dormant.set_password("Dormant123")
        db.session.add_all([admin, dormant])
        db.session.commit()
        dormant_id = dormant.id

    second = app.test_client()
    assert login(second, "second@consultancy.com", "Second123").status_code == 200
    response = second.patch(f"/api/admin/users/{dormant_id}/status", json={"status": "active"})
    assert response.status_code == 403
    with app.app_context():
        assert db.session.get(User, dormant_id).is_active is False


def test_integrations_need_granted_permission(admin_client, app):
    with app.app_context():
        admin = User(name="Ops Admin", email="ops@consultancy.com", role="admin")
        admin.set_password("OpsAdmin123")
        db.session.add(admin)
        db.session.commit()
        ops_id = admin.id

    ops = app.test_client()
    assert login(ops, "ops@consultancy.com", "OpsAdmin123").status_code == 200
    denied = ops.get("/api/admin/integrations/suitedash")
    assert denied.status_code == 403
    assert denied.get_json()["message"] == "Insufficient permissions"
    assert ops.get("/api/admin/orders").status_code == 200

    invalid = admin_client.put(f"/api/admin/users/{ops_id}/permissions", json={"permissions": ["root:all"]})
    assert invalid.status_code == 422
    granted = admin_client.put(f"/api/admin/users/{ops_id}/permissions", json={"permissions": ["integrations:manage"]})
    assert granted.status_code == 200
    assert "integrations:manage" in granted.get_json()["data"]["permissions"]

    assert ops.get("/api/admin/integrations/suitedash").status_code == 200
    assert ops.put(f"/api/admin/users/{ops_id}/permissions", json={"permissions": []}).status_code == 403
