from contextlib import contextmanager
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from core.contact_model import Contact, LinkPrecedence
from core.errors import ConsistencyFault, IdGenerationFault, ValidationFault
from repositories.sequence_repository import CONTACT_SEQUENCE
from services.identity_service import IdentityReconciler

PRIMARY = LinkPrecedence.PRIMARY
SECONDARY = LinkPrecedence.SECONDARY


def test_empty_store_creates_primary(reconciler, stored, sequence):
    view = reconciler.identify("a@x.com", "123")

    assert view.to_dict() == {
        "contact": {
            "primaryContactId": 1,
            "emails": ["a@x.com"],
            "phoneNumbers": ["123"],
            "secondaryContactIds": [],
        }
    }
    rows = stored()
    assert list(rows) == [1]
    assert rows[1].link_precedence == PRIMARY
    assert rows[1].linked_id is None
    assert sequence.names == [CONTACT_SEQUENCE]


def test_new_phone_creates_secondary(reconciler, stored):
    reconciler.identify("a@x.com", "123")
    view = reconciler.identify("a@x.com", "999")

    assert view.to_dict()["contact"] == {
        "primaryContactId": 1,
        "emails": ["a@x.com"],
        "phoneNumbers": ["123", "999"],
        "secondaryContactIds": [2],
    }
    secondary = stored()[2]
    assert secondary.link_precedence == SECONDARY
    assert secondary.linked_id == 1
    assert secondary.email == "a@x.com"
    assert secondary.phone_number == "999"


def test_repeated_request_is_idempotent(reconciler, stored, sequence):
    reconciler.identify("a@x.com", "123")
    first = reconciler.identify("a@x.com", "999")
    calls = len(sequence.names)

    second = reconciler.identify("a@x.com", "999")

    assert second.to_dict() == first.to_dict()
    assert len(stored()) == 2
    assert len(sequence.names) == calls
    assert second.resolution_steps[-1] == "unchanged"


def test_bridging_request_demotes_newer_primary(reconciler, seed, stored):
    seed(1, "a@x.com", "111")
    seed(3, "b@x.com", "222")
    before = stored()[3].updated_at

    view = reconciler.identify("a@x.com", "222")

    assert view.to_dict()["contact"] == {
        "primaryContactId": 1,
        "emails": ["a@x.com", "b@x.com"],
        "phoneNumbers": ["111", "222"],
        "secondaryContactIds": [3],
    }
    rows = stored()
    assert len(rows) == 2
    assert rows[1].link_precedence == PRIMARY and rows[1].linked_id is None
    assert rows[3].link_precedence == SECONDARY and rows[3].linked_id == 1
    assert rows[3].updated_at != before
    assert "demoted:3->1" in view.resolution_steps


def test_merge_repoints_secondaries_of_demoted_primary(reconciler, seed, stored):
    seed(1, "a@x.com", "111")
    seed(2, "a2@x.com", "111", SECONDARY, linked_id=1)
    seed(3, "b@x.com", "222")
    seed(4, "b2@x.com", "222", SECONDARY, linked_id=3)

    view = reconciler.identify("b2@x.com", "111")

    rows = stored()
    assert rows[1].link_precedence == PRIMARY
    assert [rows[i].linked_id for i in (2, 3, 4)] == [1, 1, 1]
    assert all(rows[i].link_precedence == SECONDARY for i in (2, 3, 4))
    assert view.primary_contact_id == 1
    assert view.emails == ["a@x.com", "a2@x.com", "b@x.com", "b2@x.com"]
    assert view.phone_numbers == ["111", "222"]
    assert view.secondary_contact_ids == [2, 3, 4]


def test_merge_of_three_clusters_keeps_oldest(reconciler, seed, stored):
    seed(1, "a@x.com", "555", created_at=datetime(2024, 3, 1))
    seed(3, "b@x.com", "555", created_at=datetime(2024, 1, 1))
    seed(5, "c@x.com", "777", created_at=datetime(2024, 2, 1))

    view = reconciler.identify("c@x.com", "555")

    rows = stored()
    assert view.primary_contact_id == 3
    assert rows[3].link_precedence == PRIMARY
    assert rows[1].linked_id == 3 and rows[5].linked_id == 3
    assert view.emails == ["b@x.com", "c@x.com", "a@x.com"]
    assert view.phone_numbers == ["555", "777"]
    assert view.secondary_contact_ids == [5, 1]


def test_merge_and_new_email_in_one_request(reconciler, seed, stored):
    seed(1, "a@x.com", "555")
    seed(3, "b@x.com", "555")

    view = reconciler.identify("new@x.com", "555")

    rows = stored()
    assert rows[3].linked_id == 1
    assert rows[4].link_precedence == SECONDARY
    assert rows[4].linked_id == 1
    assert (rows[4].email, rows[4].phone_number) == ("new@x.com", "555")
    assert view.emails == ["a@x.com", "b@x.com", "new@x.com"]
    assert view.secondary_contact_ids == [3, 4]


def test_match_through_secondary_resolves_to_its_primary(reconciler, seed):
    seed(1, "a@x.com", "111")
    seed(2, "other@x.com", "222", SECONDARY, linked_id=1)

    view = reconciler.identify(None, "222")

    assert view.primary_contact_id == 1
    assert view.emails == ["a@x.com", "other@x.com"]
    assert view.phone_numbers == ["111", "222"]
    assert view.secondary_contact_ids == [2]


def test_email_only_request_for_known_email_writes_nothing(reconciler, seed, stored):
    seed(1, "a@x.com", "111")

    view = reconciler.identify("a@x.com", None)

    assert len(stored()) == 1
    assert view.phone_numbers == ["111"]


def test_primary_without_phone_lists_no_phone(reconciler):
    view = reconciler.identify("solo@x.com", None)

    assert view.emails == ["solo@x.com"]
    assert view.phone_numbers == []


def test_primary_values_listed_first(reconciler, seed):
    seed(1, None, "111")
    seed(2, "early@x.com", "111", SECONDARY, linked_id=1)

    view = reconciler.identify("late@x.com", "111")

    assert view.emails == ["early@x.com", "late@x.com"]
    assert view.phone_numbers == ["111"]
    assert view.secondary_contact_ids == [2, 3]


def test_soft_deleted_contacts_never_match(reconciler, seed, stored):
    seed(1, "a@x.com", "111", deleted_at=datetime(2024, 6, 1))

    view = reconciler.identify("a@x.com", "111")

    assert view.primary_contact_id == 2
    assert view.secondary_contact_ids == []
    assert stored()[1].deleted_at is not None


def test_soft_deleted_secondary_left_out_of_cluster(reconciler, seed):
    seed(1, "a@x.com", "111")
    seed(2, "gone@x.com", "111", SECONDARY, linked_id=1, deleted_at=datetime(2024, 6, 1))

    view = reconciler.identify("a@x.com", None)

    assert view.emails == ["a@x.com"]
    assert view.secondary_contact_ids == []


def test_equal_creation_time_prefers_smaller_id(reconciler, seed, stored):
    same = datetime(2024, 5, 5, 5, 5, 5)
    seed(5, "a@x.com", "111", created_at=same)
    seed(2, "b@x.com", "222", created_at=same)

    view = reconciler.identify("a@x.com", "222")

    assert view.primary_contact_id == 2
    assert stored()[5].linked_id == 2


def test_cluster_without_primary_falls_back_to_oldest(reconciler, seed, stored):
    seed(1, "a@x.com", "111", SECONDARY, linked_id=None)

    view = reconciler.identify("a@x.com", None)

    assert view.primary_contact_id == 1
    assert stored()[1].link_precedence == PRIMARY
    assert view.secondary_contact_ids == []


def test_missing_pair_rejected_before_store_access(sequence, locks):
    contact_repo = MagicMock()
    reconciler = IdentityReconciler(contact_repo, sequence, locks)

    with pytest.raises(ValidationFault):
        reconciler.identify(None, None)

    contact_repo.transaction.assert_not_called()
    assert locks.requested == []
    assert sequence.names == []


def test_empty_cluster_expansion_is_consistency_fault(sequence, locks):
    tx = MagicMock()
    tx.find_matches.return_value = [
        Contact(id=9, email="a@x.com", phone_number=None,
                link_precedence=SECONDARY, linked_id=4)
    ]
    tx.find_clusters.return_value = []

    @contextmanager
    def transaction():
        yield tx

    contact_repo = MagicMock()
    contact_repo.transaction = transaction
    reconciler = IdentityReconciler(contact_repo, sequence, locks)

    with pytest.raises(ConsistencyFault):
        reconciler.identify("a@x.com", None)

    tx.find_clusters.assert_called_once_with([4])
    tx.promote_to_primary.assert_not_called()
    tx.insert.assert_not_called()


def test_id_generation_failure_creates_nothing(contact_repo, stored, locks):
    sequence = MagicMock()
    sequence.next.side_effect = IdGenerationFault("redis down")
    reconciler = IdentityReconciler(contact_repo, sequence, locks)

    with pytest.raises(IdGenerationFault):
        reconciler.identify("a@x.com", "111")

    assert stored() == {}


def test_id_generation_failure_rolls_back_merge(contact_repo, seed, stored, locks):
    # two clusters already sharing a phone: the request merges them and
    # also brings a new email, so the insert runs after normalization
    seed(1, "a@x.com", "555")
    seed(3, "b@x.com", "555")
    seed(4, "b2@x.com", "666", SECONDARY, linked_id=3)
    sequence = MagicMock()
    sequence.next.side_effect = IdGenerationFault("redis down")
    reconciler = IdentityReconciler(contact_repo, sequence, locks)

    with pytest.raises(IdGenerationFault):
        reconciler.identify("new@x.com", "555")

    rows = stored()
    assert len(rows) == 3
    assert rows[3].link_precedence == PRIMARY
    assert rows[3].linked_id is None
    assert rows[4].linked_id == 3


def test_locks_requested_for_both_values(reconciler, locks):
    reconciler.identify("a@x.com", "123")
    reconciler.identify(None, "123")

    assert len(locks.requested[0]) == 2
    assert locks.requested[0] == sorted(locks.requested[0])
    assert len(locks.requested[1]) == 1


def test_resolution_written_to_audit_trail(contact_repo, sequence, locks):
    audit_repo = MagicMock()
    reconciler = IdentityReconciler(contact_repo, sequence, locks, audit_repo)

    view = reconciler.identify("a@x.com", "123")

    audit_repo.log_resolution.assert_called_once_with(view, "a@x.com", "123")
    assert view.resolution_id.startswith("res_")
    assert view.resolution_steps == ["created_primary:1"]
