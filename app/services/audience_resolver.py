from typing import Any

from app.core.clock import Clock, utc_now
from app.core.errors import SegmentNotFound
from app.services.campaign_store import CampaignStore, CustomerRecord
from app.services.rule_compiler import Predicate, compile_document


class AudienceResolver:
    """Materializes the recipients a rule tree selects at the current instant."""

    def __init__(self, store: CampaignStore, *, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    def compile(self, rules: Any) -> Predicate:
        return compile_document(rules, now=self.clock())

    def resolve(self, rules: Any) -> list[CustomerRecord]:
        recipients = self.store.find_customers(self.compile(rules))
        # Stores page internally; the contract is one record per id, ordered by id.
        unique = {record.id: record for record in recipients}
        return [unique[key] for key in sorted(unique)]

    def resolve_segment(self, segment_id: str) -> list[CustomerRecord]:
        segment = self.store.get_segment(segment_id)
        if segment is None:
            raise SegmentNotFound(segment_id)
        return self.resolve(segment.rules_json)

    def audience_size(self, rules: Any) -> int:
        return self.store.count_customers(self.compile(rules))
