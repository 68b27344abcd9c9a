"""
Load test for the course platform API.

Logs in once in setup, then every virtual user checks service health,
reads its profile and lists courses.

Run:
    surge run examples/course_api.py                  # default ramping scenario
    surge run examples/course_api.py --profile load   # dev | load | stress | spike
    API_URL=http://staging:8000 surge run examples/course_api.py

Requires a running API exposing /health, /auth/login, /auth/me and /api/courses.
"""

import logging
import random

logger = logging.getLogger(__name__)

name = "course-api"

# Default scenario when no profile is chosen.
options = {
    "executor": "ramping-vus",
    "gracefulRampDown": "30s",
    "stages": [
        {"duration": "30s", "target": 20},
        {"duration": "1m", "target": 20},
        {"duration": "30s", "target": 0},
    ],
    "thresholds": {
        "http_req_duration": ["p(95)<500"],
        "errors": ["rate<0.1"],
    },
}

profiles = {
    "dev": {
        "vus": 10,
        "duration": "30s",
        "thresholds": {
            "http_req_duration": ["p(95)<500"],
            "errors": ["rate<0.1"],
        },
    },
    "load": {
        "stages": [
            {"duration": "1m", "target": 50},
            {"duration": "3m", "target": 50},
            {"duration": "1m", "target": 0},
        ],
        "thresholds": {
            "http_req_duration": ["p(95)<1000"],
            "errors": ["rate<0.05"],
        },
    },
    "stress": {
        "stages": [
            {"duration": "1m", "target": 100},
            {"duration": "3m", "target": 100},
            {"duration": "2m", "target": 200},
            {"duration": "3m", "target": 200},
            {"duration": "1m", "target": 0},
        ],
        "thresholds": {
            "http_req_duration": ["p(95)<2000"],
            "errors": ["rate<0.1"],
        },
    },
    "spike": {
        "stages": [
            {"duration": "30s", "target": 10},
            {"duration": "1m", "target": 300},
            {"duration": "1m", "target": 10},
            {"duration": "30s", "target": 0},
        ],
        "thresholds": {
            "http_req_duration": ["p(95)<5000"],
            "errors": ["rate<0.15"],
        },
    },
}

USERS = (
    {"email": "test1@example.com", "password": "Password123!"},
    {"email": "test2@example.com", "password": "Password123!"},
    {"email": "test3@example.com", "password": "Password123!"},
)


def setup(session):
    user = random.choice(USERS)
    res = session.http.post("/auth/login", json=user)
    # A login failure is fatal: the run stops before any load is generated.
    return {"token": res.raise_for_status().json()["token"]}


def default(session, data):
    headers = {"Authorization": f"Bearer {data['token']}"}

    with session.group("public"):
        res = session.http.get("/health")
        session.check(res, {"health check status is 200": lambda r: r.status == 200})
        session.sleep(1)

    with session.group("authenticated"):
        res = session.http.get("/auth/me", headers=headers)
        session.check(
            res,
            {
                "get profile status is 200": lambda r: r.status == 200,
                "profile has correct data": lambda r: "email" in r.json(),
            },
        )
        session.sleep(1)

        res = session.http.get("/api/courses", headers=headers)
        session.check(
            res,
            {
                "get courses status is 200": lambda r: r.status == 200,
                "courses response is array": lambda r: isinstance(r.json(), list),
            },
        )
        session.sleep(2)


def teardown(session, data):
    logger.info("Load test completed.")
