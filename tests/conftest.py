"""
Shared fixtures for the Trello dashboard tests.
"""

from unittest.mock import MagicMock

import pytest

from dashboard_config import config_from_dict
from trello_client import TrelloClient, TrelloConfig

LEAD = "m-lead"
TS_A = "m-ts-a"
TS_B = "m-ts-b"
TS_C = "m-ts-c"
DEV = "m-dev"

DOING = "list-doing"
DONE = "list-done"
WAITING_FIX = "list-waiting-fix"
WAITING_DEV = "list-waiting-dev"
CONFIRM = "list-confirm"
FIX_DONE = "list-fix-done"
NEW = "list-new"


@pytest.fixture
def config_data():
    return {
        "timezone": "Asia/Ho_Chi_Minh",
        "issues_list_id": DONE,
        "bugs_list_id": FIX_DONE,
        "members": [
            {"id": LEAD, "full_name": "Lead", "role": "TS-Lead", "group": "TS1"},
            {"id": TS_A, "full_name": "Alice", "role": "TS", "group": "TS1"},
            {"id": TS_B, "full_name": "Bao", "role": "ts", "group": "TS2"},
            {"id": TS_C, "full_name": "Chi", "role": "TS", "group": "TS2"},
            {"id": DEV, "full_name": "Dev", "role": "dev", "group": "Dev"},
        ],
        "lists": [
            {"id": NEW, "name": "New Issues", "category": "new_issues"},
            {"id": DOING, "name": "Doing (Inshift)", "category": "doing"},
            {"id": DONE, "name": "Done", "category": "done"},
            {"id": WAITING_FIX, "name": "Waiting to fix", "category": "waiting_to_fix"},
            {"id": WAITING_DEV, "name": "Waiting to fix (from dev)", "category": "waiting_to_fix_from_dev"},
            {"id": CONFIRM, "name": "Waiting for Customer's Confirmation", "category": "waiting_confirmation"},
            {"id": FIX_DONE, "name": "Fix done from dev", "category": "fix_done_from_dev"},
            {"id": "list-archive", "name": "Archive"},
        ],
        "apps": [
            {"app_name": "SEO Booster", "label": "App: SEO Booster", "group_ts": "TS1", "product_team": "Growth"},
            {"app_name": "Cookie Bar", "label": "App: Cookie Bar", "group_ts": "TS2", "product_team": "Compliance"},
        ],
        "teams": ["Growth", "Compliance", "Operations"],
    }


@pytest.fixture
def config(config_data):
    return config_from_dict(config_data)


@pytest.fixture
def trello_config():
    return TrelloConfig(api_key="k", token="t", board_id="board1", base_url="https://trello.test/1")


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


@pytest.fixture
def client(trello_config, session):
    return TrelloClient(trello_config, session=session)


def make_response(status_code=200, payload=None, text=None):
    """A stand-in for requests.Response."""
    r = MagicMock()
    r.status_code = status_code
    if payload is not None:
        r.json.return_value = payload
        r.content = b"x"
        r.text = text if text is not None else "json"
    else:
        r.content = b"" if text is None else text.encode()
        r.text = text or ""
        r.json.side_effect = ValueError("No JSON")
    return r


def make_action(action_id, date, kind="updateCard", actor=TS_A, card_id="c1", card_name="Card 1",
                list_after=None, list_before=None, member=None, due_complete=None, text=None):
    data = {"card": {"id": card_id, "name": card_name}}
    if list_after:
        data["listAfter"] = {"id": list_after, "name": list_after}
    if list_before:
        data["listBefore"] = {"id": list_before, "name": list_before}
    if member:
        data["idMember"] = member
    if due_complete is not None:
        data["card"]["dueComplete"] = due_complete
    if text:
        data["text"] = text
    return {"id": action_id, "type": kind, "date": date, "idMemberCreator": actor, "data": data}


def make_card(card_id, members=(), labels=(), list_id=DONE, name=None):
    return {
        "id": card_id,
        "name": name or f"Card {card_id}",
        "idList": list_id,
        "idMembers": list(members),
        "labels": [{"name": l} for l in labels],
        "shortUrl": f"https://trello.com/c/{card_id}",
    }
