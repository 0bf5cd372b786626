"""Tests for actor resolution and the authorization guard."""

import pytest
from flask_login import AnonymousUserMixin

from quoteledger.errors import Forbidden, Unauthorized
from quoteledger.extensions import db
from quoteledger.lifecycle import send
from quoteledger.security import (
    ACTION_ACCEPT,
    ACTION_CANCEL,
    ACTION_CREATE,
    ACTION_RECORD_PAYMENT,
    ACTION_REJECT,
    ACTION_SEND,
    ACTION_VIEW,
    AccountantActor,
    AdminActor,
    ClientActor,
    StaffActor,
    actor_from_user,
    authorize,
)


class TestActorFromUser:
    def test_anonymous(self):
        with pytest.raises(Unauthorized):
            actor_from_user(AnonymousUserMixin())

    def test_missing(self):
        with pytest.raises(Unauthorized):
            actor_from_user(None)

    def test_inactive(self, world):
        world.staff.is_active = False
        with pytest.raises(Unauthorized):
            actor_from_user(world.staff)

    def test_roles(self, world):
        assert actor_from_user(world.admin) == AdminActor(user_id=world.admin.id)
        assert actor_from_user(world.staff) == StaffActor(user_id=world.staff.id, business_id=world.business.id)
        assert isinstance(actor_from_user(world.accountant), AccountantActor)
        assert actor_from_user(world.client_user) == ClientActor(
            user_id=world.client_user.id, client_id=world.client.id
        )

    def test_unknown_role(self, world):
        world.staff.role = "superuser"
        with pytest.raises(Forbidden):
            actor_from_user(world.staff)


class TestAuthorize:
    @pytest.fixture(autouse=True)
    def document(self, make_document):
        self.quote = make_document("quote")
        db.session.flush()

    def test_staff_of_business(self, world):
        authorize(ACTION_SEND, actor_from_user(world.staff), self.quote)

    def test_admin_any_business(self, world):
        authorize(ACTION_CANCEL, actor_from_user(world.admin), self.quote)

    def test_staff_of_other_business(self, world):
        with pytest.raises(Forbidden):
            authorize(ACTION_SEND, actor_from_user(world.rival_staff), self.quote)

    @pytest.mark.parametrize("action", [ACTION_SEND, ACTION_RECORD_PAYMENT, ACTION_CANCEL])
    def test_client_cannot_run_staff_actions(self, world, action):
        with pytest.raises(Forbidden):
            authorize(action, actor_from_user(world.client_user), self.quote)

    def test_accountant_is_read_only(self, world):
        actor = actor_from_user(world.accountant)
        authorize(ACTION_VIEW, actor, self.quote)
        with pytest.raises(Forbidden):
            authorize(ACTION_RECORD_PAYMENT, actor, self.quote)

    @pytest.mark.parametrize("action", [ACTION_ACCEPT, ACTION_REJECT])
    def test_addressed_client_responds(self, world, action):
        authorize(action, actor_from_user(world.client_user), self.quote)

    @pytest.mark.parametrize("actor_name", ["other_client_user", "staff", "admin"])
    def test_only_addressed_client_responds(self, world, actor_name):
        with pytest.raises(Forbidden):
            authorize(ACTION_ACCEPT, actor_from_user(getattr(world, actor_name)), self.quote)

    def test_client_cannot_see_drafts(self, world):
        actor = actor_from_user(world.client_user)
        with pytest.raises(Forbidden):
            authorize(ACTION_VIEW, actor, self.quote)
        send(self.quote)
        authorize(ACTION_VIEW, actor, self.quote)

    def test_create_uses_business_id(self, world):
        authorize(ACTION_CREATE, actor_from_user(world.staff), business_id=world.business.id)
        with pytest.raises(Forbidden):
            authorize(ACTION_CREATE, actor_from_user(world.staff), business_id=world.other_business.id)

    def test_unknown_action_fails_closed(self, world):
        with pytest.raises(Forbidden):
            authorize("delete_everything", actor_from_user(world.admin), self.quote)
