from conftest import fund, login, make_user, purchase, reserve


def test_stats(app, admin_client, fan, fan_client, event):
    fund(app, fan, 10000)
    purchase(fan_client, event["id"], 2)
    reserve(fan_client, event["id"], 1, ticket_type="vip")

    stats = admin_client.get("/api/admin/stats").get_json()["stats"]
    assert stats["total_users"] == 2
    assert stats["active_events"] == 1
    assert stats["tickets_sold"] == 2
    assert stats["tickets_used"] == 0
    assert stats["active_reservations"] == 1
    assert stats["completed_payments"] == 1
    assert stats["total_revenue"] == 2478
    assert stats["payments_by_status"] == {"completed": 1}

    assert fan_client.get("/api/admin/stats").status_code == 403


def test_sales_report(app, admin_client, venue, fan, fan_client, event):
    fund(app, fan, 20000)
    purchase(fan_client, event["id"], 3)
    purchase(fan_client, event["id"], 1)

    report = admin_client.get("/api/admin/sales").get_json()
    assert report["summary"] == {"total_revenue": 3717 + 1239, "total_tickets": 4}
    assert report["per_event"][0]["event"]["id"] == event["id"]
    assert report["most_popular"][0]["tickets_sold"] == 4


def test_venue_admin_sees_only_own_sales(app, admin_client, fan, fan_client, event):
    fund(app, fan, 5000)
    purchase(fan_client, event["id"], 1)

    make_user(app, "va@example.com", role="venue_admin")
    c = app.test_client()
    login(c, "va@example.com")
    report = c.get("/api/admin/sales").get_json()
    assert report["summary"] == {"total_revenue": 0, "total_tickets": 0}
    assert report["per_event"] == []
