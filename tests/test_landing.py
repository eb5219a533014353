import asyncio

import pytest

from landing import (
    LANDING_PAGES,
    CountdownRedirect,
    CountdownRegistry,
    LandingPage,
    RedirectState,
    RedirectStateError,
    countdowns,
)


@pytest.mark.asyncio
async def test_countdown_navigates_after_delay():
    visited = []
    redirect = CountdownRedirect(LandingPage("promo", "/register", delay_seconds=0.01))
    assert redirect.state == RedirectState.IDLE
    result = await redirect.run(visited.append)
    assert result == RedirectState.NAVIGATED
    assert visited == ["/register"]


@pytest.mark.asyncio
async def test_zero_delay_navigates_immediately():
    visited = []

    async def navigate(target):
        visited.append(target)

    await CountdownRedirect(LandingPage("home", "/register")).run(navigate)
    assert visited == ["/register"]


@pytest.mark.asyncio
async def test_cancel_during_countdown():
    visited = []
    redirect = CountdownRedirect(LandingPage("music", "/music", delay_seconds=5, cancellable=True))
    redirect.start()
    task = asyncio.create_task(redirect.run(visited.append))
    await asyncio.sleep(0)
    redirect.cancel()
    assert await asyncio.wait_for(task, timeout=1) == RedirectState.CANCELLED
    assert visited == []


@pytest.mark.asyncio
async def test_non_cancellable_page_refuses_cancel():
    redirect = CountdownRedirect(LandingPage("anonigview", "/anonigview", delay_seconds=1))
    redirect.start()
    with pytest.raises(RedirectStateError):
        redirect.cancel()
    assert redirect.state == RedirectState.COUNTDOWN


@pytest.mark.asyncio
async def test_cannot_restart_or_cancel_when_idle():
    redirect = CountdownRedirect(LandingPage("music", "/music", delay_seconds=0, cancellable=True))
    with pytest.raises(RedirectStateError):
        redirect.cancel()
    await redirect.run(lambda target: None)
    with pytest.raises(RedirectStateError):
        redirect.start()


def test_go_home_redirects_immediately(client):
    resp = client.get("/go/home", follow_redirects=False)
    assert resp.status_code == 307
    assert resp.headers["location"] == "/register"


def test_landing_page_waits_idle_until_clicked(client):
    resp = client.get("/go/anonigview")
    assert resp.status_code == 200
    assert resp.json() == {
        "name": "anonigview",
        "state": "idle",
        "target": "/anonigview",
        "delay_seconds": 3,
        "cancellable": False,
        "message": None,
    }


def test_click_starts_countdown_with_status_message(client):
    resp = client.post("/go/anonigview")
    assert resp.status_code == 202
    assert resp.headers["refresh"] == "3; url=/anonigview"
    body = resp.json()
    assert body["state"] == "countdown"
    assert body["message"] == "Hang on! We are redirecting you..."

    status = client.get(f"/go/anonigview/{body['id']}")
    assert status.json()["state"] == "countdown"


def test_visitor_can_cancel_music_countdown(client):
    started = client.post("/go/music")
    assert started.status_code == 202
    assert "refresh" not in started.headers
    countdown_id = started.json()["id"]

    resp = client.post(f"/go/music/{countdown_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["state"] == "cancelled"
    assert countdowns.get(countdown_id).state == RedirectState.CANCELLED
    assert client.get(f"/go/music/{countdown_id}").json()["state"] == "cancelled"

    again = client.post(f"/go/music/{countdown_id}/cancel")
    assert again.status_code == 409


def test_non_cancellable_countdown_refuses_cancel_over_http(client):
    countdown_id = client.post("/go/anonigview").json()["id"]
    resp = client.post(f"/go/anonigview/{countdown_id}/cancel")
    assert resp.status_code == 409
    assert client.get(f"/go/anonigview/{countdown_id}").json()["state"] == "countdown"


def test_countdown_ids_are_scoped_to_their_page(client):
    countdown_id = client.post("/go/music").json()["id"]
    assert client.get(f"/go/anonigview/{countdown_id}").status_code == 404
    assert client.post("/go/music/unknown/cancel").status_code == 404


def test_landing_table_sends_nobody_to_a_bare_profile_page():
    assert "profile" not in LANDING_PAGES
    assert LANDING_PAGES["anonigview"].delay_seconds == 3
    assert not LANDING_PAGES["anonigview"].cancellable


@pytest.mark.asyncio
async def test_registry_runs_countdown_to_navigation():
    registry = CountdownRegistry()
    countdown_id, redirect = registry.start(LandingPage("promo", "/register", delay_seconds=0.01))
    assert redirect.state == RedirectState.COUNTDOWN
    assert await asyncio.wait_for(registry.tasks[countdown_id], timeout=1) == RedirectState.NAVIGATED
    await registry.shutdown()
    assert registry.get(countdown_id) is None


def test_unknown_landing_page(client):
    assert client.get("/go/nowhere").status_code == 404
    assert client.post("/go/nowhere").status_code == 404
