from decimal import Decimal

from extensions import db
from models import ReferralHierarchy, User, UserStatus
from rewards.audit import LedgerAuditor


class TestAuthRoutes:

    def test_signup_with_referral_code(self, client, make_user):
        referrer = make_user()
        response = client.post("/api/signup", json={
            "fullName": "New Person",
            "email": "New.Person@example.com",
            "password": "secret123",
            "referralCode": referrer.referral_code.lower(),
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body["user"]["email"] == "new.person@example.com"
        assert body["user"]["referredBy"] == referrer.id
        assert body["user"]["currentPosition"]["level"] == 0
        assert body["referral"]["rewardAmount"] == 2.0
        assert db.session.get(User, referrer.id).wallet_balance == Decimal("2.00")
        assert ReferralHierarchy.query.filter_by(user_id=body["user"]["id"]).count() == 1

    def test_signup_rejects_bad_input(self, client, make_user):
        existing = make_user()
        missing = client.post("/api/signup", json={"email": "a@example.com"})
        bad_code = client.post("/api/signup", json={
            "fullName": "X", "email": "x@example.com", "password": "secret123", "referralCode": "NOPE0000",
        })
        duplicate = client.post("/api/signup", json={
            "fullName": "X", "email": existing.email, "password": "secret123",
        })

        assert missing.status_code == 400
        assert bad_code.get_json()["error"] == "Invalid referral code"
        assert duplicate.status_code == 400

    def test_login_me_logout(self, client, make_user, login):
        user = make_user()
        assert client.get("/api/me").status_code == 401

        assert login(user).status_code == 200
        me = client.get("/api/me")
        assert me.status_code == 200
        assert me.get_json()["referralCode"] == user.referral_code

        assert client.post("/api/logout").status_code == 200
        assert client.get("/api/me").status_code == 401

    def test_repeated_failures_lock_the_account(self, app, client, make_user, login):
        user = make_user()
        for _ in range(app.config["MAX_FAILED_LOGINS"]):
            assert login(user, password="wrong-password").status_code == 401

        assert login(user).status_code == 423

    def test_suspended_user_cannot_log_in(self, make_user, login):
        user = make_user(status=UserStatus.SUSPENDED)
        assert login(user).status_code == 403


class TestVideoRoutes:

    def test_list_and_watch(self, client, make_user, make_position, give_position, make_video, login):
        user = make_user()
        give_position(user, make_position(tasks_per_day=3))
        video = make_video()
        login(user)

        listing = client.get("/api/videos").get_json()
        assert [v["id"] for v in listing["videos"]] == [video.id]

        response = client.post(f"/api/videos/{video.id}/watch", json={
            "watchDuration": 90,
            "userInteractions": ["play", "pause"],
            "verificationData": {"deviceId": "device-1"},
        })
        assert response.status_code == 200
        body = response.get_json()
        assert body["rewardEarned"] == 2.0
        assert body["tasksRemaining"] == 2
        assert "status" not in body

        again = client.post(f"/api/videos/{video.id}/watch", json={"watchDuration": 90})
        assert again.status_code == 400
        assert again.get_json()["error"] == "Video already watched today"

    def test_watch_requires_a_session(self, client, make_video):
        video = make_video()
        assert client.post(f"/api/videos/{video.id}/watch", json={"watchDuration": 90}).status_code == 401

    def test_suspended_session_is_forbidden(self, client, make_user, make_position, give_position,
                                            make_video, login):
        user = make_user()
        give_position(user, make_position())
        login(user)
        user.status = UserStatus.SUSPENDED
        db.session.commit()

        response = client.post(f"/api/videos/{make_video().id}/watch", json={"watchDuration": 90})
        assert response.status_code == 403

    def test_unknown_video(self, client, make_user, make_position, give_position, login):
        user = make_user()
        give_position(user, make_position())
        login(user)
        assert client.get("/api/videos/9999").status_code == 404
        assert client.post("/api/videos/9999/watch", json={"watchDuration": 90}).status_code == 404


class TestReferralRoutes:

    def test_track_visit(self, client, make_user):
        referrer = make_user()
        ok = client.post("/api/referral/track", json={"referralCode": referrer.referral_code, "source": "telegram"})
        unknown = client.post("/api/referral/track", json={"referralCode": "NOPE0000"})
        empty = client.post("/api/referral/track", json={})

        assert ok.status_code == 200
        assert ok.get_json()["activityId"]
        assert unknown.status_code == 404
        assert empty.status_code == 400

    def test_stats_hierarchy_and_rewards(self, client, make_user, login):
        top = make_user()
        mid = make_user(referrer=top)
        make_user(referrer=mid)
        login(top)

        stats = client.get("/api/referral/stats").get_json()
        assert stats["referralLink"].endswith(f"/register?ref={top.referral_code}")
        assert [r["id"] for r in stats["referrals"]] == [mid.id]

        hierarchy = client.get("/api/referrals/hierarchy").get_json()
        assert hierarchy["stats"]["aLevelCount"] == 1
        assert hierarchy["stats"]["bLevelCount"] == 1
        assert len(hierarchy["members"]["B_LEVEL"]) == 1

        rewards = client.get("/api/referrals/rewards?limit=5").get_json()
        assert rewards["rewardHistory"] == []


class TestPositionAndWalletRoutes:

    def test_positions_catalog(self, client):
        body = client.get("/api/positions").get_json()
        assert [p["level"] for p in body["positions"]] == [0, 1, 2, 3]

    def test_subscribe(self, client, make_user, position, login):
        user = make_user(balance="50.00")
        login(user)

        assert client.post("/api/positions/subscribe", json={}).status_code == 400
        response = client.post("/api/positions/subscribe", json={"positionId": position(1).id})
        assert response.status_code == 200
        assert response.get_json()["subscription"]["position"]["level"] == 1

        current = client.get("/api/positions/current").get_json()
        assert current["assignment"]["status"] == "active"
        assert current["eligibility"]["canComplete"] is True

    def test_withdraw_and_history(self, client, make_user, login):
        user = make_user(balance="50.00")
        login(user)

        too_small = client.post("/api/wallet/withdraw", json={"amount": "5", "phone": "+256700000001"})
        no_phone = client.post("/api/wallet/withdraw", json={"amount": "20"})
        ok = client.post("/api/wallet/withdraw", json={"amount": "20", "phone": "+256700000001"})
        too_much = client.post("/api/wallet/withdraw", json={"amount": "40", "phone": "+256700000001"})

        assert too_small.status_code == 400
        assert no_phone.status_code == 400
        assert ok.status_code == 200
        assert ok.get_json()["newBalance"] == 30.0
        assert too_much.get_json()["error"] == "Insufficient balance"

        debits = client.get("/api/wallet/transactions?type=debit").get_json()
        assert [tx["amount"] for tx in debits["transactions"]] == [20.0]
        assert client.get("/api/wallet/transactions?type=bogus").status_code == 400
        assert LedgerAuditor.audit_user(db.session.get(User, user.id))["ok"]

    def test_dashboard_route(self, client, make_user, login):
        user = make_user(balance="3.00")
        login(user)
        body = client.get("/api/dashboard?fresh=1").get_json()
        assert body["user"]["walletBalance"] == 3.0


class TestAppSurface:

    def test_healthz(self, client):
        assert client.get("/healthz").get_json()["status"] == "ok"

    def test_unknown_route_is_json(self, client):
        response = client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.get_json() == {"error": "Not found"}

    def test_seed_command_is_idempotent(self, app):
        result = app.test_cli_runner().invoke(args=["seed-catalog", "--no-videos"])
        assert result.exit_code == 0
        assert "Seeded 0 position(s), 0 reward trigger(s), 0 video(s)" in result.output

    def test_audit_command(self, app, make_user):
        runner = app.test_cli_runner()
        user = make_user(balance="4.00")
        assert runner.invoke(args=["audit-ledger"]).exit_code == 0

        user.wallet_balance = Decimal("1.00")
        db.session.commit()
        result = runner.invoke(args=["audit-ledger"])
        assert result.exit_code == 1
        assert f"user {user.id}" in result.output
