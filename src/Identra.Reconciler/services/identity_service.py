"""
Identity Reconciliation Service

Identity Reconciliation
- Every answer names exactly one canonical primary contact
- Matching is exact on email OR phone number, soft-deleted rows excluded
- Bridging requests merge clusters under the oldest primary
- Repeating a request adds nothing (idempotent secondary creation)
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import uuid4

import structlog

from core.contact_model import Contact, ContactHelper, IdentityView, LinkPrecedence
from core.errors import ConsistencyFault, ValidationFault
from repositories.audit_repository import AuditRepository
from repositories.contact_repository import ContactRepository, ContactTransaction
from repositories.lock_repository import LockRepository
from repositories.sequence_repository import CONTACT_SEQUENCE, SequenceRepository

logger = structlog.get_logger()


class IdentityReconciler:
    """
    Resolves a submitted (email, phone) pair to its canonical identity.

    Reconciliation algorithm:
    1. Take the per-value locks and open one store transaction
    2. Match active contacts by email or phone (oldest first)
    3. No match: create a new primary and answer with it alone
    4. Expand matches to their clusters, pick the oldest primary as canonical
    5. Normalize: demote the other primaries, repoint their secondaries
    6. Add one secondary if the pair carries an email or phone the cluster lacks
    7. Commit, answer with the cluster, write the audit trail
    """

    def __init__(
        self,
        contact_repo: ContactRepository,
        sequence_repo: SequenceRepository,
        lock_repo: LockRepository,
        audit_repo: Optional[AuditRepository] = None
    ):
        self.contact_repo = contact_repo
        self.sequence_repo = sequence_repo
        self.lock_repo = lock_repo
        self.audit_repo = audit_repo

    def identify(self, email: Optional[str], phone: Optional[str]) -> IdentityView:
        """
        Reconcile one pair. Values must already be normalized
        (see ContactHelper); at least one must be present.

        Raises:
            ValidationFault: both values absent (no store access happens)
            ConsistencyFault, IdGenerationFault, StoreUnavailable,
            StoreConflict, ReconciliationTimeout: request aborted, nothing committed
        """
        if email is None and phone is None:
            raise ValidationFault("At least one of email or phoneNumber is required")

        resolution_id = f"res_{uuid4().hex[:12]}"
        with structlog.contextvars.bound_contextvars(resolution_id=resolution_id):
            with self.lock_repo.hold(email, phone):
                with self.contact_repo.transaction() as tx:
                    view = self._reconcile(tx, email, phone)
            view.resolution_id = resolution_id

            logger.info(
                "identify_resolved",
                primary_contact_id=view.primary_contact_id,
                secondary_count=len(view.secondary_contact_ids),
                steps=view.resolution_steps
            )

            if self.audit_repo is not None:
                self.audit_repo.log_resolution(view, email, phone)

        return view

    def _reconcile(self, tx: ContactTransaction, email: Optional[str], phone: Optional[str]) -> IdentityView:
        steps = []

        matches = tx.find_matches(email, phone)
        if not matches:
            contact = self._create_contact(tx, email, phone, LinkPrecedence.PRIMARY)
            steps.append(f"created_primary:{contact.id}")
            return self._build_view(contact, [contact], steps)

        steps.append("matched:" + ",".join(str(c.id) for c in matches))

        canonical, roots, members = self._resolve_clusters(tx, matches)
        self._normalize(tx, canonical, roots, members, steps)

        cluster = tx.find_cluster(canonical.id)
        if self._has_new_information(cluster, email, phone):
            contact = self._create_contact(tx, email, phone, LinkPrecedence.SECONDARY, canonical.id)
            steps.append(f"created_secondary:{contact.id}->{canonical.id}")
            cluster = tx.find_cluster(canonical.id)
        else:
            steps.append("unchanged")

        primary = next((c for c in cluster if c.id == canonical.id), canonical)
        return self._build_view(primary, cluster, steps)

    def _resolve_clusters(
        self,
        tx: ContactTransaction,
        matches: List[Contact]
    ) -> Tuple[Contact, List[int], List[Contact]]:
        """
        Expand matches to every cluster they touch and pick the canonical primary:
        the oldest primary (ties -> smallest id), else the oldest member.
        Returns: (canonical, roots, members)
        """
        roots = sorted({c.cluster_root for c in matches})
        members = tx.find_clusters(roots)

        if not members:
            logger.error("cluster_expansion_empty", roots=roots, matched=[c.id for c in matches])
            raise ConsistencyFault("Matched contacts resolved to no cluster", meta={'roots': roots})

        primaries = [c for c in members if c.is_primary]
        if not primaries:
            logger.warning("cluster_without_primary", roots=roots)
        canonical = min(primaries or members, key=ContactHelper.sort_key)

        return canonical, roots, members

    def _normalize(
        self,
        tx: ContactTransaction,
        canonical: Contact,
        roots: List[int],
        members: List[Contact],
        steps: List[str]
    ) -> None:
        """Collapse every touched cluster into canonical's"""
        now = datetime.now(timezone.utc)

        if tx.promote_to_primary(canonical.id, now):
            steps.append(f"promoted:{canonical.id}")

        others = [r for r in roots if r != canonical.id]
        if not others:
            return

        demoted = tx.demote_primaries(canonical.id, others, now)
        repointed = tx.repoint_secondaries(canonical.id, others, now)

        other_roots = set(others)
        for contact in members:
            if contact.is_primary and contact.id in other_roots:
                steps.append(f"demoted:{contact.id}->{canonical.id}")

        if repointed:
            steps.append(f"repointed:{repointed}->{canonical.id}")

        logger.info(
            "clusters_merged",
            canonical_id=canonical.id,
            merged_roots=others,
            demoted=demoted,
            repointed=repointed
        )

    @staticmethod
    def _has_new_information(cluster: List[Contact], email: Optional[str], phone: Optional[str]) -> bool:
        emails = {c.email for c in cluster if c.email}
        phones = {c.phone_number for c in cluster if c.phone_number}
        return (
            (email is not None and email not in emails)
            or (phone is not None and phone not in phones)
        )

    def _create_contact(
        self,
        tx: ContactTransaction,
        email: Optional[str],
        phone: Optional[str],
        precedence: LinkPrecedence,
        linked_id: Optional[int] = None
    ) -> Contact:
        contact_id = self.sequence_repo.next(CONTACT_SEQUENCE)
        contact = Contact(
            id=contact_id,
            email=email,
            phone_number=phone,
            link_precedence=precedence,
            linked_id=linked_id
        )
        return tx.insert(contact)

    @staticmethod
    def _build_view(primary: Contact, cluster: List[Contact], steps: List[str]) -> IdentityView:
        """Primary's own values first, then the rest in creation order, no repeats"""
        members = sorted(cluster, key=ContactHelper.sort_key)

        return IdentityView(
            primary_contact_id=primary.id,
            emails=ContactHelper.unique_in_order([primary.email] + [c.email for c in members]),
            phone_numbers=ContactHelper.unique_in_order(
                [primary.phone_number] + [c.phone_number for c in members]
            ),
            secondary_contact_ids=[
                c.id for c in members if c.link_precedence == LinkPrecedence.SECONDARY
            ],
            resolution_steps=steps
        )
