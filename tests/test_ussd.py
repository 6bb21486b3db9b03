from conftest import fund, inventory

PHONE = "+250788123456"


def dial(client, text, session="ATUid_1", phone=PHONE):
    r = client.post("/api/ussd", data={"sessionId": session, "serviceCode": "*801#", "phoneNumber": phone,
                                       "text": text})
    assert r.status_code == 200, r.get_data(as_text=True)
    assert r.mimetype == "text/plain"
    return r.get_data(as_text=True)


def register(client, db, name="Aline Uwase"):
    assert dial(client, f"4*{name}").startswith("END Registration successful")
    return db["users"].find_one({"phone": PHONE})["_id"]


def test_main_menu_and_unknown_option(app):
    c = app.test_client()
    menu = dial(c, "")
    assert menu.startswith("CON Welcome to SmartSports Rwanda")
    assert "1. Buy Ticket" in menu and "4. Register" in menu
    assert dial(c, "9") == "END Invalid option. Please try again."


def test_register_and_balance(app, db):
    c = app.test_client()
    assert dial(c, "3") == "END Please register first by selecting option 4."
    assert dial(c, "4") == "CON Enter your full name:"
    assert dial(c, "4*A") == "END Please enter a valid full name."

    uid = register(c, db)
    user = db["users"].find_one({"_id": uid})
    assert (user["first_name"], user["last_name"], user["role"]) == ("Aline", "Uwase", "fan")
    assert "email" not in user
    assert dial(c, "4*Aline Uwase") == "END You are already registered."

    # same subscriber, local number format
    assert dial(c, "3", phone="788123456") == "END Your wallet balance: 0 RWF"
    fund(app, uid, 700)
    assert dial(c, "3") == "END Your wallet balance: 700 RWF"


def test_phone_only_users_do_not_clash(app, db):
    c = app.test_client()
    register(c, db)
    other = dial(c, "4*Jean Bosco", phone="+250722000111")
    assert other.startswith("END Registration successful")
    assert db["users"].count_documents({"registered_via": "ussd"}) == 2


def test_buy_requires_registration(app, event):
    assert dial(app.test_client(), "1") == "END Please register first by selecting option 4."


def test_buy_with_wallet(app, db, event):
    c = app.test_client()
    uid = register(c, db)
    fund(app, uid, 5000)

    events = dial(c, "1")
    assert events.startswith("CON Select an event:\n1. APR FC vs Rayon Sports")

    tiers = dial(c, "1*1")
    assert "1. REGULAR - 1000 RWF (5 left)" in tiers
    assert "2. VIP - 5000 RWF (2 left)" in tiers
    assert dial(c, "1*1*1") == "CON Enter number of REGULAR tickets (1-5):"

    confirm = dial(c, "1*1*1*2")
    assert "Total: 2478 RWF" in confirm
    assert "3. Wallet" in confirm

    done = dial(c, "1*1*1*2*3")
    assert done.startswith("END Payment complete. Your tickets:")
    assert len(done.splitlines()) == 3
    assert inventory(db, event["id"]) == {"quantity": 5, "remaining": 3, "held": 0, "sold": 2}
    assert db["wallets"].find_one({"user_id": uid})["balance"] == 5000 - 2478

    # the gateway resending the last step does not buy again
    assert dial(c, "1*1*1*2*3") == done
    assert inventory(db, event["id"])["sold"] == 2

    mine = dial(c, "2", session="ATUid_2")
    assert mine.startswith("CON Your active tickets:")
    assert "REGULAR-000" in mine
    detail = dial(c, "2*1", session="ATUid_2")
    assert detail.startswith("END APR FC vs Rayon Sports")
    assert "Seat: REGULAR-000" in detail


def test_buy_with_mobile_money_waits_for_approval(app, db, gateways, event):
    c = app.test_client()
    register(c, db)
    reply = dial(c, "1*1*2*1*1")
    assert reply.startswith("END Approve 6195 RWF on your phone to finish.")
    assert len(gateways.clients["mtn_primary"].charged) == 1

    p = db["payments"].find_one({})
    assert p["customer_phone"] == PHONE
    assert p["customer_name"] == "Aline Uwase"
    assert p["status"] == "processing"
    assert inventory(db, event["id"], "vip")["held"] == 1


def test_failed_wallet_payment_releases_hold(app, db, event):
    c = app.test_client()
    register(c, db)
    reply = dial(c, "1*1*1*1*3")
    assert reply.startswith("END Payment failed: wallet: Insufficient wallet balance. Ref: SSR")
    assert inventory(db, event["id"]) == {"quantity": 5, "remaining": 5, "held": 0, "sold": 0}


def test_bad_choices_end_the_session(app, db, event):
    c = app.test_client()
    register(c, db)
    assert dial(c, "1*7") == "END Invalid event selection."
    assert dial(c, "1*1*x") == "END Invalid ticket type selection."
    assert dial(c, "1*1*1*9") == "END quantity must be <= 5."
    assert dial(c, "1*1*1*1*0") == "END Purchase cancelled."
    assert dial(c, "1*1*1*1*5") == "END Invalid payment selection."
    assert db["reservations"].count_documents({}) == 0
    assert dial(c, "2") == "END You have no active tickets."


def test_no_events_on_sale(app, db):
    c = app.test_client()
    register(c, db)
    assert dial(c, "1") == "END No events have tickets on sale right now."


def test_request_validation_and_gateway_secret(app):
    c = app.test_client()
    r = c.post("/api/ussd", data={"sessionId": "s", "phoneNumber": "12345", "text": ""})
    assert r.status_code == 400
    assert r.get_json()["details"]["field"] == "phoneNumber"

    r = c.post("/api/ussd", json={"sessionId": "s", "phoneNumber": PHONE, "text": ""})
    assert r.status_code == 200
    assert r.get_data(as_text=True).startswith("CON")

    app.config["USSD_SECRET"] = "gw-secret"
    body = {"sessionId": "s", "phoneNumber": PHONE, "text": ""}
    assert c.post("/api/ussd", data=body).status_code == 401
    assert c.post("/api/ussd", data=body, headers={"X-USSD-Secret": "wrong"}).status_code == 401
    assert c.post("/api/ussd", data=body, headers={"X-USSD-Secret": "gw-secret"}).status_code == 200
