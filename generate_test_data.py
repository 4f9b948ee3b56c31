import argparse
import json
import random
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import requests

BASE_URL = "http://127.0.0.1:8000"
DEFAULT_OUTPUT = "data/ist_events.json"

# Skill pools by course; a few entries are deliberately messy to exercise normalization
SKILLS = {
    "stats-101": [
        "Bayes Theorem",
        "bayes   theorem",
        "Probability",
        "PROBABILITY ",
        "Conditional Probability",
        "Random Variables",
        "Expected Value",
        "Hypothesis Testing",
    ],
    "bpmn-201": [
        "BPMN Gateways",
        "Swimlanes",
        "Message Flow",
        "Sequence Flow",
        "Subprocesses",
        "Events",
    ],
    "lang-de-en": [
        "Vocabulary",
        "Grammar",
        "Präpositionen",
        "Word Order",
    ],
}

# Values that must never count as skills
MALFORMED_SKILLS = ["", "   ", "!!!", "--", 42, None, {"name": "Probability"}]

MESSAGES = {
    "stats-101": [
        "Can you explain Bayes theorem with a simple example?",
        "Why is conditional probability different from joint probability?",
        "What is the expected value of a fair die?",
        "How do I pick the right hypothesis test?",
    ],
    "bpmn-201": [
        "What is an XOR gateway?",
        "Explain swimlanes in BPMN",
        "Describe sequence vs message flow.",
    ],
    "lang-de-en": [
        "Wann benutze ich 'seit' und wann 'für'?",
        "Why does the verb go to the end in German subordinate clauses?",
    ],
}

USERS = ["anna", "ben", "carla", "marco"]
TOKENS = {"anna": "demo-token-anna", "ben": "demo-token-ben", "carla": "demo-token-carla", "marco": "demo-token-marco"}


def _pick_skills(rng, course_id):
    pool = SKILLS[course_id]
    skills = rng.sample(pool, k=rng.randint(1, min(4, len(pool))))
    # 15% chance of junk entries mixed into an otherwise valid list
    if rng.random() < 0.15:
        skills.append(rng.choice(MALFORMED_SKILLS))
    # duplicates within one event must only count once
    if rng.random() < 0.1:
        skills.append(skills[0])
    return skills


def _skills_field(rng, course_id):
    roll = rng.random()
    if roll < 0.04:
        return "Probability"  # not a list
    if roll < 0.07:
        return None
    if roll < 0.09:
        return {"items": SKILLS[course_id][:2]}
    return _pick_skills(rng, course_id)


def build_events(count=200, seed=7, start=None):
    rng = random.Random(seed)
    start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    courses = list(SKILLS.keys())
    events = []
    for index in range(count):
        course_id = rng.choice(courses)
        user = rng.choice(USERS)
        thread_id = f"{user}-{course_id}-{index // 5}"
        message_id = f"m{index}"
        event = {
            "id": f"{thread_id}:{message_id}",
            "courseId": course_id,
            "createdAt": (start + timedelta(minutes=17 * index)).isoformat(),
            "threadId": thread_id,
            "messageId": message_id,
            "uid": user,
            "skills": _skills_field(rng, course_id),
        }
        if rng.random() < 0.03:
            # events without a course never appear in any report
            event.pop("courseId")
        events.append(event)
    return events


def write_dataset(path, events):
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(events, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    print(f"Wrote {len(events)} IST events to {target}")


def test_connection():
    try:
        r = requests.get(f"{BASE_URL}/health", timeout=5)
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False


def post_messages(iterations, seed=7):
    rng = random.Random(seed)
    success_count = 0
    for i in range(iterations):
        user = rng.choice(USERS)
        course_id = rng.choice(list(MESSAGES.keys()))
        text = rng.choice(MESSAGES[course_id])
        print(f"[{user}][{course_id}] Message: {text}")
        resp = requests.post(
            f"{BASE_URL}/ist/analyze",
            json={
                "threadId": f"{user}-{course_id}",
                "messageId": f"gen-{i}",
                "messageText": text,
                "courseId": course_id,
            },
            headers={"Authorization": f"Bearer {TOKENS[user]}"},
            timeout=60,
        )
        if resp.ok:
            body = resp.json()
            skills = [s.get("displayName") for s in body["analysis"].get("skills", [])]
            print(f" → Analysis received, skills={skills}, persisted={body.get('persisted')}")
            success_count += 1
        else:
            print(f" → Error: {resp.status_code} {resp.text[:200]}")
        time.sleep(0.3)

    print(f"{success_count} of {iterations} messages analyzed.")

    for course_id in MESSAGES:
        r = requests.get(f"{BASE_URL}/teacher/courses/{course_id}/ist-report", timeout=30)
        if r.ok:
            report = r.json()["report"]
            print(f"{course_id}: {report['totalEvents']} events, {report['uniqueSkillsCount']} unique skills")
        else:
            print(f"Failed to get report for {course_id}: {r.status_code}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate mock IST events or post sample messages to a running server.")
    parser.add_argument("--output", default=DEFAULT_OUTPUT, help=f"Dataset path (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--count", type=int, default=200, help="Number of events to generate")
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--post", action="store_true", help="Send sample messages to /ist/analyze instead")
    parser.add_argument("--iterations", type=int, default=10, help="Messages to send with --post")
    args = parser.parse_args(argv)

    if args.post:
        print(f"Tokens expected by the server: IST_API_TOKENS={','.join(f'{t}:{u}' for u, t in TOKENS.items())}")
        if not test_connection():
            return 1
        post_messages(args.iterations, seed=args.seed)
        return 0

    write_dataset(args.output, build_events(args.count, seed=args.seed))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
