from datetime import timedelta

from conftest import create_event, login, make_user


def test_team_crud(admin_client, fan_client):
    assert fan_client.post("/api/teams", json={"name": "APR FC", "sport": "football"}).status_code == 403

    r = admin_client.post("/api/teams", json={"name": "APR FC", "sport": "football", "city": "Kigali"})
    assert r.status_code == 201
    team = r.get_json()["team"]

    dup = admin_client.post("/api/teams", json={"name": "apr fc", "sport": "football"})
    assert dup.status_code == 409
    # same name, other sport is fine
    assert admin_client.post("/api/teams", json={"name": "APR FC", "sport": "basketball"}).status_code == 201

    listed = admin_client.get("/api/teams?sport=football").get_json()["teams"]
    assert [t["name"] for t in listed] == ["APR FC"]

    upd = admin_client.put(f"/api/teams/{team['id']}", json={"short_name": "APR"})
    assert upd.get_json()["team"]["short_name"] == "APR"

    assert admin_client.delete(f"/api/teams/{team['id']}").status_code == 200
    assert admin_client.get(f"/api/teams/{team['id']}").status_code == 404


def test_team_in_use_cannot_be_deleted(admin_client, venue):
    home = admin_client.post("/api/teams", json={"name": "APR FC", "sport": "football"}).get_json()["team"]
    away = admin_client.post("/api/teams", json={"name": "Rayon Sports", "sport": "football"}).get_json()["team"]
    create_event(admin_client, venue["id"], home_team_id=home["id"], away_team_id=away["id"])

    r = admin_client.delete(f"/api/teams/{home['id']}")
    assert r.status_code == 409


def test_event_teams_must_differ(admin_client, venue):
    team = admin_client.post("/api/teams", json={"name": "APR FC", "sport": "football"}).get_json()["team"]
    r = admin_client.post("/api/events", json={
        "title": "Derby", "sport": "football", "event_type": "match", "venue_id": venue["id"],
        "start_datetime": "2030-01-01T15:00:00", "end_datetime": "2030-01-01T17:00:00",
        "home_team_id": team["id"], "away_team_id": team["id"], "ticket_price_regular": 1000,
    })
    assert r.status_code == 400
    assert r.get_json()["details"]["field"] == "away_team_id"


def test_event_from_tier_prices_splits_capacity(admin_client, venue):
    r = admin_client.post("/api/events", json={
        "title": "Basketball Africa League", "sport": "basketball", "event_type": "tournament",
        "venue_id": venue["id"], "start_datetime": "2030-05-01T18:00:00Z", "end_datetime": "2030-05-01T21:00:00Z",
        "ticket_price_regular": 2000, "ticket_price_vip": 10000, "ticket_price_student": 1000,
    })
    assert r.status_code == 201
    body = r.get_json()
    quantities = {t["type"]: t["quantity"] for t in body["ticket_types"]}
    assert quantities == {"regular": 70, "vip": 20, "student": 10}
    assert body["event"]["ticket_stats"] == {"total": 100, "sold": 0, "held": 0, "available": 100}


def test_event_validation(admin_client, venue):
    base = {"title": "Match", "sport": "football", "event_type": "match", "venue_id": venue["id"],
            "ticket_price_regular": 500}

    r = admin_client.post("/api/events", json={**base, "start_datetime": "2030-01-02", "end_datetime": "2030-01-01"})
    assert r.status_code == 400

    r = admin_client.post("/api/events", json={**base, "sport": "chess",
                                               "start_datetime": "2030-01-01", "end_datetime": "2030-01-02"})
    assert r.get_json()["details"]["field"] == "sport"

    r = admin_client.post("/api/events", json={
        **base, "start_datetime": "2030-01-01", "end_datetime": "2030-01-02",
        "ticket_types": [{"type": "regular", "price": 100, "quantity": 101}],
    })
    assert r.status_code == 400
    assert r.get_json()["details"]["capacity"] == 100


def test_list_events_filters_and_paginates(admin_client, venue, app):
    create_event(admin_client, venue["id"], title="Early game")
    late = create_event(admin_client, venue["id"], start_offset=timedelta(days=10), title="Late game")
    admin_client.put(f"/api/events/{late['id']}", json={"status": "postponed"})

    c = app.test_client()
    active = c.get("/api/events").get_json()
    assert [e["title"] for e in active["events"]] == ["Early game"]
    assert active["events"][0]["ticket_stats"]["total"] == 7

    everything = c.get("/api/events?status=all&limit=1&page=2").get_json()
    assert everything["pagination"] == {"page": 2, "limit": 1, "total": 2, "total_pages": 2}
    assert everything["events"][0]["title"] == "Late game"

    assert c.get("/api/events?q=early").get_json()["pagination"]["total"] == 1
    assert c.get("/api/events?limit=500").status_code == 400
    assert c.get("/api/events?date_from=yesterday").status_code == 400


def test_venue_admin_only_manages_own_venue(app, admin_client, venue):
    va = make_user(app, "va@example.com", role="venue_admin")
    own = admin_client.post("/api/venues", json={"name": "Kigali Arena", "city": "Kigali", "capacity": 50,
                                                 "admin_user_id": str(va)}).get_json()["venue"]
    c = app.test_client()
    login(c, "va@example.com")

    assert c.post("/api/events", json={
        "title": "Not mine", "sport": "football", "event_type": "match", "venue_id": venue["id"],
        "start_datetime": "2030-01-01", "end_datetime": "2030-01-02", "ticket_price_regular": 100,
    }).status_code == 403

    r = c.post("/api/events", json={
        "title": "Mine", "sport": "basketball", "event_type": "match", "venue_id": own["id"],
        "start_datetime": "2030-01-01", "end_datetime": "2030-01-02", "ticket_price_regular": 100,
    })
    assert r.status_code == 201


def test_venue_admin_must_have_role(admin_client, fan):
    r = admin_client.post("/api/venues", json={"name": "Field", "capacity": 10, "admin_user_id": str(fan)})
    assert r.status_code == 400


def test_ticket_type_quantity_cannot_drop_below_committed(admin_client, fan_client, event):
    detail = admin_client.get(f"/api/events/{event['id']}").get_json()
    regular = next(t for t in detail["ticket_types"] if t["type"] == "regular")

    r = fan_client.post("/api/reservations", json={"event_id": event["id"], "ticket_type": "regular", "quantity": 3})
    assert r.status_code == 201

    assert admin_client.put(f"/api/ticket-types/{regular['id']}", json={"quantity": 2}).status_code == 409
    ok = admin_client.put(f"/api/ticket-types/{regular['id']}", json={"quantity": 8})
    assert ok.get_json()["ticket_type"]["available"] == 5

    assert admin_client.delete(f"/api/ticket-types/{regular['id']}").status_code == 409
    assert admin_client.delete(f"/api/events/{event['id']}").status_code == 409


def test_add_ticket_type(admin_client, event):
    r = admin_client.post(f"/api/events/{event['id']}/ticket-types", json={"type": "child", "price": 300, "quantity": 10})
    assert r.status_code == 201
    dup = admin_client.post(f"/api/events/{event['id']}/ticket-types", json={"type": "child", "price": 300, "quantity": 1})
    assert dup.status_code == 409


def test_unknown_event(app):
    c = app.test_client()
    assert c.get("/api/events/000000000000000000000000").status_code == 404
    assert c.get("/api/events/not-an-id").status_code == 400


def test_event_times_are_stored_in_utc(admin_client, venue, db):
    e = create_event(admin_client, venue["id"], start_datetime="2030-06-01T21:00:00+03:00",
                     end_datetime="2030-06-01T23:00:00+03:00")
    assert e["start_datetime"] == "2030-06-01T18:00:00+00:00"
    assert e["end_datetime"] == "2030-06-01T20:00:00+00:00"

    r = admin_client.put(f"/api/events/{e['id']}", json={"end_datetime": "2030-06-01T22:30:00Z"})
    assert r.status_code == 200
    stored = db["events"].find_one({"title": e["title"]})
    assert stored["start_datetime"] == "2030-06-01T18:00:00+00:00"
    assert stored["end_datetime"] == "2030-06-01T22:30:00+00:00"


def test_date_filters_compare_instants(admin_client, venue, app):
    create_event(admin_client, venue["id"], title="Kigali derby",
                 start_datetime="2030-06-01T21:00:00+03:00", end_datetime="2030-06-01T23:00:00+03:00")
    create_event(admin_client, venue["id"], title="Evening final",
                 start_datetime="2030-06-01T19:00:00Z", end_datetime="2030-06-01T21:00:00Z")

    c = app.test_client()

    def titles(qs):
        r = c.get(f"/api/events?status=all&{qs}")
        assert r.status_code == 200
        return [e["title"] for e in r.get_json()["events"]]

    # 18:00Z sorts before 19:00Z even though "21:00+03:00" > "19:00Z" as text.
    assert titles("date_from=2030-06-01") == ["Kigali derby", "Evening final"]
    assert titles("date_to=2030-06-01") == ["Kigali derby", "Evening final"]
    assert titles("date_to=2030-05-31") == []
    assert titles("date_from=2030-06-02") == []
    assert titles("date_from=2030-06-01T20:30:00%2B02:00") == ["Evening final"]
    assert titles("date_to=2030-06-01T18:30:00Z") == ["Kigali derby"]
