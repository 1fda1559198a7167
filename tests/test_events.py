import json
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph.events import to_payload, to_sse
from graph.progress import done_event, progress_event, status_event, summary_message
from graph.state import RunState, MAX_AUDIT_SAMPLES


class TestRunState:

    def test_fetch_size_is_clamped(self):
        assert RunState("l", 10).next_fetch_size(5.0, 100, 2000) == 100
        assert RunState("l", 100).next_fetch_size(5.0, 100, 2000) == 500
        assert RunState("l", 1000).next_fetch_size(5.0, 100, 2000) == 2000

    def test_fetch_size_follows_observed_attrition(self):
        run = RunState("l", 100, accepted=10, examined=500)
        # 50 examined per accepted lead
        assert run.next_fetch_size(5.0, 100, 10000) == 4500

    def test_record_verification(self):
        run = RunState("l", 10)
        run.record_verification("a@acme.co", "apollo", "safe")
        run.record_verification("b@acme.co", "apollo", "risky", cached=True)
        run.record_verification("c@acme.co", "", "invalid")

        assert run.status_breakdown == {"safe": 1, "risky": 1, "cached": 1, "invalid": 1}
        assert run.cached == 1
        assert run.source_stats["apollo"]["total"] == 2
        assert run.source_stats["apollo"]["other"] == 1
        assert run.source_stats["unknown"]["invalid"] == 1
        assert run.samples[1] == {"email": "b@acme.co", "source": "apollo", "status": "risky", "cached": True}

    def test_audit_sample_is_capped(self):
        run = RunState("l", 10)
        for i in range(MAX_AUDIT_SAMPLES + 5):
            run.record_verification(f"p{i}@acme.co", "apollo", "safe")
        assert len(run.samples) == MAX_AUDIT_SAMPLES


class TestEvents:
    """Wire format of the progress channel."""

    def setup_method(self):
        self.run = RunState("q3 list", 5, accepted=2, fetched=40, examined=40, sent_to_verifier=9, duplicates=3)
        self.run.status_breakdown = {"safe": 2, "invalid": 7}

    def test_status_sse(self):
        line = to_sse(status_event("Starting"))
        assert line.startswith("data: ")
        assert line.endswith("\n\n")
        assert json.loads(line[len("data: "):]) == {"type": "status", "message": "Starting"}

    def test_progress_payload(self):
        payload = to_payload(progress_event(self.run, "verifying", "Verified: 2/5"))

        assert payload["type"] == "progress"
        assert payload["phase"] == "verifying"
        assert payload["clean"] == 2
        assert payload["target"] == 5
        assert payload["sent_to_reoon"] == 9
        assert payload["breakdown"] == {"safe": 2, "invalid": 7}

    def test_done_payload_uses_client_names(self):
        payload = to_payload(done_event(self.run, persisted=2, cancelled=False))

        assert payload["type"] == "done"
        assert payload["success"] is True
        assert payload["listName"] == "q3 list"
        assert payload["cleanLeads"] == 2
        assert payload["requested"] == 5
        assert payload["stats"]["totalFetched"] == 40
        assert payload["stats"]["duplicatesSkipped"] == 3
        assert payload["stats"]["statusBreakdown"] == {"safe": 2, "invalid": 7}
        assert payload["persistenceError"] is None

    def test_done_with_persistence_error(self):
        event = done_event(self.run, persisted=0, cancelled=False, persistence_error="2 leads at risk")
        assert event.success is False
        assert event.message.endswith("2 leads at risk")

    def test_summary_messages(self):
        assert summary_message(self.run, cancelled=True) == 'Stopped by user. Kept 2 leads for list "q3 list".'
        assert summary_message(RunState("x", 5), cancelled=True) == "Stopped by user before any leads were found."
        assert summary_message(self.run, cancelled=False) == (
            "Generated 2 leads (Target 5). Source exhausted after checking 40 candidates."
        )
        full = RunState("x", 2, accepted=2)
        assert summary_message(full, cancelled=False) == 'Successfully generated 2 clean leads for list "x".'
