"""End-to-end tests of the migrator against in-memory Trello and GitLab fakes."""

from typing import Any

import pytest
from conftest import (
    TRELLO_URL,
    FakeSource,
    FakeTarget,
    close_card_action,
    comment_action,
    create_action,
    make_card,
    ts,
)
from gitlab.exceptions import GitlabError

from trello_to_gitlab_migrator.content import CUSTOM_FIELDS_HEADING
from trello_to_gitlab_migrator.migrator import CardFilter, TrelloToGitLabMigrator
from trello_to_gitlab_migrator.models import (
    CheckItem,
    Checklist,
    CustomFieldDefinition,
    CustomFieldItem,
    SourceAttachment,
    SourceBoard,
    SourceList,
    TargetIssue,
    TargetMilestone,
    TargetUser,
)
from trello_to_gitlab_migrator.options import ConverterAction, ConverterOptions
from trello_to_gitlab_migrator.progress import ConversionStep, ProgressCollector
from trello_to_gitlab_migrator.reference_index import MARKER_TOKEN, build_marker_note


def migrate(
    options: ConverterOptions, source: FakeSource, target: FakeTarget
) -> tuple[TrelloToGitLabMigrator, ProgressCollector]:
    collector = ProgressCollector()
    migrator = TrelloToGitLabMigrator(options, source, target, collector)
    assert migrator.run() is True
    return migrator, collector


@pytest.mark.unit
class TestCardFilter:
    def test_empty_filter_includes_everything(self) -> None:
        assert CardFilter([])(make_card("c1", "ab12", "Card"))

    def test_matches_id_short_link_or_url_case_insensitive(self) -> None:
        card = make_card("C1", "Ab12", "Card")

        assert CardFilter(["ab12"])(card)
        assert CardFilter(["c1"])(card)
        assert CardFilter([f"{TRELLO_URL}/c/ab12".upper()])(card)
        assert not CardFilter(["zz99"])(card)


@pytest.mark.unit
class TestConvertAll:
    def setup_method(self) -> None:
        self.card = make_card("c1", "ab12", "First card", desc="Body")
        self.board = SourceBoard(
            cards=[self.card],
            lists=[SourceList("list-1", "Todo")],
            checklists=[Checklist(id="k1", name="Steps", id_card="c1", check_items=(CheckItem("one", "complete"),))],
            actions=[
                comment_action("a3", "c1", 4, "second comment"),
                comment_action("a2", "c1", 3, "first comment"),
                create_action("a1", "c1", 2),
            ],
        )
        self.source = FakeSource(self.board)
        self.target = FakeTarget()

    def test_creates_issue_with_marker_then_comments(self, options: ConverterOptions) -> None:
        migrator, _ = migrate(options, self.source, self.target)

        ((fields, acting),) = self.target.calls_named("create_issue")
        assert fields["title"] == "First card"
        assert fields["description"] == "Body\n\n### Steps\n\n- [x] one\n"
        # Without sudo the card's last activity is the best available date
        assert fields["created_at"] == ts(20).isoformat()
        assert acting is None

        bodies = [note.body for note in self.target.notes[1]]
        assert MARKER_TOKEN in bodies[0]
        assert bodies[1:] == ["first comment", "second comment"]
        assert all(created_at is None for _, _, created_at, _ in self.target.calls_named("create_note"))
        assert migrator.stats.issues_created == 1
        assert migrator.stats.comments_created == 2

    def test_second_run_creates_nothing(self, options: ConverterOptions) -> None:
        _ = migrate(options, self.source, self.target)
        migrator, collector = migrate(options, self.source, self.target)

        assert len(self.target.calls_named("create_issue")) == 1
        assert len(self.target.notes[1]) == 3
        assert migrator.stats.issues_created == 0
        assert any("already migrated as #1" in info for info in collector.infos)

    def test_renamed_issue_is_still_recognised(self, options: ConverterOptions) -> None:
        _ = migrate(options, self.source, self.target)
        self.target.issues[1].title = "Renamed in GitLab"

        _ = migrate(options, self.source, self.target)

        assert len(self.target.calls_named("create_issue")) == 1

    def test_progress_steps(self, options: ConverterOptions) -> None:
        _, collector = migrate(options, self.source, self.target)

        steps = [r.step for r in collector.reports if r.total is None and r.step is not ConversionStep.CUSTOM]
        assert steps == [
            ConversionStep.INIT,
            ConversionStep.FETCHING_BOARD,
            ConversionStep.BOARD_FETCHED,
            ConversionStep.CARDS_CONVERTED,
            ConversionStep.REWRITING_LINKS,
            ConversionStep.LINKS_REWRITTEN,
        ]
        assert collector.reports[-1].step is ConversionStep.FINISHED
        assert self.source.board_fetches == 1

    def test_inclusion_filter_applies_to_every_pass(self, options: ConverterOptions) -> None:
        excluded = make_card("c2", "zz99", "Excluded", desc=f"See {TRELLO_URL}/c/ab12")
        self.board.cards.append(excluded)
        options.trello.cards_to_include = ["ab12"]

        migrator, collector = migrate(options, self.source, self.target)

        assert [fields["title"] for fields, _ in self.target.calls_named("create_issue")] == ["First card"]
        skipped = [info for info in collector.infos if info.startswith("Skipping card c2")]
        # Once while converting, once while rewriting links
        assert len(skipped) == 2
        assert migrator.stats.cards_skipped == 2

    def test_inclusion_filter_applies_to_custom_field_backfill(self, options: ConverterOptions) -> None:
        excluded = make_card("c2", "zz99", "Excluded")
        self.board.cards.append(excluded)
        _migrated(self.target, 1, self.card, "Body")
        _migrated(self.target, 2, excluded, "Other")
        self.source.custom_fields = [CustomFieldDefinition("f1", "Size", "text")]
        self.source.custom_field_items = {
            "c1": [CustomFieldItem("f1", value="L")],
            "c2": [CustomFieldItem("f1", value="S")],
        }
        options.trello.cards_to_include = ["ab12"]
        options.global_options.action = ConverterAction.MOVE_CUSTOM_FIELDS

        _, collector = migrate(options, self.source, self.target)

        assert [iid for iid, _, _ in self.target.calls_named("edit_issue")] == [1]
        assert self.target.issues[2].description == "Other"
        assert any(info.startswith("Skipping card c2") for info in collector.infos)


@pytest.mark.unit
class TestClosing:
    def test_card_close_action_wins_over_list(self, options: ConverterOptions) -> None:
        card = make_card("c1", "ab12", "Closed card", closed=True)
        board = SourceBoard(
            cards=[card],
            lists=[SourceList("list-1", closed=True)],
            actions=[close_card_action("a1", "c1", 3, "member-1"), close_card_action("a0", "c1", 1, "member-2")],
        )
        options.associations.members_users = {"member-1": 11, "member-2": 12}
        target = FakeTarget(sudo=True)

        migrator, _ = migrate(options, FakeSource(board), target)

        iid, fields, acting = target.calls_named("edit_issue")[-1]
        assert iid == 1
        assert fields == {"state_event": "close", "updated_at": ts(3).isoformat()}
        assert acting == 11
        assert target.issues[1].state == "closed"
        assert migrator.stats.issues_closed == 1

    def test_closed_list_closes_card_without_timestamp_when_not_sudo(self, options: ConverterOptions) -> None:
        card = make_card("c1", "ab12", "Card in archived list")
        board = SourceBoard(cards=[card], lists=[SourceList("list-1", closed=True)])
        target = FakeTarget()

        _ = migrate(options, FakeSource(board), target)

        assert target.calls_named("edit_issue")[-1] == (1, {"state_event": "close"}, None)

    def test_open_card_is_not_closed(self, options: ConverterOptions) -> None:
        board = SourceBoard(cards=[make_card("c1", "ab12", "Open")], lists=[SourceList("list-1")])
        target = FakeTarget()

        _ = migrate(options, FakeSource(board), target)

        assert target.calls_named("edit_issue") == []
        assert target.issues[1].state == "opened"


@pytest.mark.unit
class TestSudo:
    def test_dates_and_authors_are_preserved(self, options: ConverterOptions) -> None:
        card = make_card("c1", "ab12", "Card")
        board = SourceBoard(
            cards=[card],
            actions=[create_action("a1", "c1", 1, "member-1"), comment_action("a2", "c1", 2, "hi", "member-2")],
        )
        options.associations.members_users = {"member-1": 11, "member-2": 12}
        target = FakeTarget(sudo=True)
        target.users = [TargetUser(11, "ann"), TargetUser(12, "bob", is_admin=True)]

        _ = migrate(options, FakeSource(board), target)

        ((fields, acting),) = target.calls_named("create_issue")
        assert fields["created_at"] == ts(1).isoformat()
        assert acting == 11
        assert target.calls_named("create_note")[1] == (1, "hi", ts(2), 12)
        assert target.calls_named("set_admin") == [(11, True), (11, False)]
        assert target.calls[-1] == ("set_admin", (11, False))

    def test_privileges_revoked_when_conversion_crashes(self, options: ConverterOptions) -> None:
        board = SourceBoard(cards=[make_card("c1", "ab12", "Card")])
        options.associations.members_users = {"member-1": 11}
        target = FakeTarget(sudo=True)
        target.users = [TargetUser(11, "ann")]

        def explode() -> list[TargetIssue]:
            msg = "unexpected"
            raise RuntimeError(msg)

        target.list_issues = explode  # type: ignore[method-assign]

        with pytest.raises(RuntimeError):
            _ = TrelloToGitLabMigrator(options, FakeSource(board), target, ProgressCollector()).run()

        assert target.calls_named("set_admin") == [(11, True), (11, False)]


@pytest.mark.unit
class TestAttachmentsAndFields:
    def test_attachments_are_rehosted_and_listed(self, options: ConverterOptions) -> None:
        url_a = f"{TRELLO_URL}/1/cards/c1/attachments/a/download/a.png"
        url_b = f"{TRELLO_URL}/1/cards/c1/attachments/b/download/b.pdf"
        url_c = f"{TRELLO_URL}/1/cards/c1/attachments/c/download/c.txt"
        board = SourceBoard(cards=[make_card("c1", "ab12", "Card", desc=f"Look: {url_a}")])
        source = FakeSource(board)
        source.attachments["c1"] = [
            SourceAttachment("a", "a.png", url_a),
            SourceAttachment("b", "b.pdf", url_b),
            SourceAttachment("c", "c.txt", url_c),
        ]
        source.files = {url_a: b"a", url_b: b"b"}
        target = FakeTarget()

        _ = migrate(options, source, target)

        description = target.issues[1].description
        upload_a = f"/uploads/{1:032x}/a.png"
        upload_b = f"/uploads/{2:032x}/b.pdf"
        assert description.startswith(f"Look: {upload_a}\n\n### Attachments\n\n")
        assert f"- ![b.pdf]({upload_b})" in description
        assert f"- [c.txt]({url_c})" in description
        assert url_a not in description

    def test_attachment_in_failed_comment_is_listed(self, options: ConverterOptions) -> None:
        url_a = f"{TRELLO_URL}/1/cards/c1/attachments/a/download/a.png"
        board = SourceBoard(
            cards=[make_card("c1", "ab12", "Card", desc="Body")],
            actions=[comment_action("a1", "c1", 2, f"Screenshot {url_a}")],
        )
        source = FakeSource(board)
        source.attachments["c1"] = [SourceAttachment("a", "a.png", url_a)]
        source.files = {url_a: b"a"}
        target = FakeTarget()
        target.fail_on.add("create_note")

        migrator, _ = migrate(options, source, target)

        upload_a = f"/uploads/{1:032x}/a.png"
        assert target.issues[1].description == f"Body\n\n### Attachments\n\n- ![a.png]({upload_a})\n"
        assert any(error.startswith("Error while creating issue comment: ") for error in migrator.stats.errors)

    def test_attachment_in_written_comment_is_not_listed(self, options: ConverterOptions) -> None:
        url_a = f"{TRELLO_URL}/1/cards/c1/attachments/a/download/a.png"
        board = SourceBoard(
            cards=[make_card("c1", "ab12", "Card", desc="Body")],
            actions=[comment_action("a1", "c1", 2, f"Screenshot {url_a}")],
        )
        source = FakeSource(board)
        source.attachments["c1"] = [SourceAttachment("a", "a.png", url_a)]
        source.files = {url_a: b"a"}
        target = FakeTarget()

        _ = migrate(options, source, target)

        assert target.issues[1].description == "Body"
        assert target.notes[1][1].body == f"Screenshot /uploads/{1:032x}/a.png"

    def test_labels_assignees_and_milestones(self, options: ConverterOptions) -> None:
        card = make_card("c1", "ab12", "Card", id_labels=("red",), id_members=("member-1",))
        options.associations.labels_labels = {"red": "bug"}
        options.associations.lists_labels = {"list-1": "todo"}
        options.associations.labels_milestones = {"red": 3}
        options.associations.lists_milestones = {"list-9": 99}
        options.associations.members_users = {"member-1": 11}
        target = FakeTarget()
        target.milestones = [TargetMilestone(id=500, iid=3, title="v1")]

        migrator, collector = migrate(options, FakeSource(SourceBoard(cards=[card])), target)

        ((fields, _),) = target.calls_named("create_issue")
        assert fields["labels"] == "bug,todo"
        assert fields["assignee_ids"] == [11]
        assert fields["milestone_id"] == 500
        assert collector.errors == [
            "Error while fetching milestone: milestone with iid '99' not found on project",
        ]
        assert migrator.stats.issues_created == 1

    def test_custom_fields_rendered_on_creation(self, options: ConverterOptions) -> None:
        source = FakeSource(SourceBoard(cards=[make_card("c1", "ab12", "Card", desc="Body")]))
        source.custom_fields = [CustomFieldDefinition("f1", "Size", "text")]
        source.custom_field_items = {"c1": [CustomFieldItem("f1", value="L")]}
        target = FakeTarget()

        _ = migrate(options, source, target)

        assert target.issues[1].description == f"Body\n\n{CUSTOM_FIELDS_HEADING}\n\n- **Size**: L\n"


@pytest.mark.unit
class TestErrors:
    def test_failing_card_does_not_stop_the_batch(self, options: ConverterOptions) -> None:
        board = SourceBoard(cards=[make_card("c-broken", "bb00", "Broken"), make_card("c-ok", "ok11", "Fine")])
        target = FakeTarget()
        create_issue = target.create_issue

        def flaky(fields: dict[str, Any], acting_user_id: int | None = None) -> TargetIssue:
            if fields["title"] == "Broken":
                raise GitlabError("500 Internal Server Error", response_code=500)
            return create_issue(fields, acting_user_id)

        target.create_issue = flaky  # type: ignore[method-assign]

        migrator, collector = migrate(options, FakeSource(board), target)

        assert [issue.title for issue in target.issues.values()] == ["Fine"]
        assert len(collector.errors) == 1
        assert collector.errors[0].startswith("Error while creating issue: ")
        assert collector.errors[0].endswith("\nCard: c-broken")
        assert migrator.stats.errors == collector.errors

    def test_comment_failure_is_reported_with_issue(self, options: ConverterOptions) -> None:
        board = SourceBoard(cards=[make_card("c1", "ab12", "Card")], actions=[comment_action("a1", "c1", 2, "hi")])
        target = FakeTarget()
        target.fail_on.add("create_note")

        migrator, collector = migrate(options, FakeSource(board), target)

        assert migrator.stats.issues_created == 1
        assert len(collector.errors) == 2
        assert collector.errors[0].startswith("Error while creating migration marker: ")
        assert collector.errors[1].endswith("\nCard: c1\nIssue: 1001 (#1)")


@pytest.mark.unit
class TestCrossLinks:
    def test_card_url_becomes_issue_reference(self, options: ConverterOptions) -> None:
        target = FakeTarget()
        for iid in range(1, 7):
            _ = target.add_issue(iid, f"Old issue {iid}")
        card_b = make_card("c-b", "bb22", "Card B")
        card_a = make_card("c-a", "aa11", "Card A", desc=f"Depends on {TRELLO_URL}/c/bb22/2-card-b")

        _ = migrate(options, FakeSource(SourceBoard(cards=[card_b, card_a])), target)

        assert target.issues[7].title == "Card B"
        assert target.issues[8].description == "Depends on #7"

    def test_links_in_comments_are_rewritten(self, options: ConverterOptions) -> None:
        card_b = make_card("c-b", "bb22", "Card B")
        card_a = make_card("c-a", "aa11", "Card A")
        board = SourceBoard(cards=[card_a, card_b], actions=[comment_action("a1", "c-a", 2, f"dup of {TRELLO_URL}/c/bb22")])
        target = FakeTarget()

        _ = migrate(options, FakeSource(board), target)

        assert target.notes[1][1].body == "dup of #2"
        assert MARKER_TOKEN in target.notes[1][0].body


def _migrated(target: FakeTarget, iid: int, card: Any, description: str = "", notes: list[str] | None = None) -> None:
    _ = target.add_issue(iid, card.name, description, notes=[build_marker_note(card), *(notes or [])])


@pytest.mark.unit
class TestNarrowModes:
    def test_adjust_mentions(self, options: ConverterOptions) -> None:
        card = make_card("c1", "ab12", "Card")
        target = FakeTarget()
        _migrated(target, 1, card, "cc @johndoe", ["@JohnDoe said hi"])
        options.mentions = {"johndoe": "jdoe"}
        options.global_options.action = ConverterAction.ADJUST_MENTIONS

        _ = migrate(options, FakeSource(SourceBoard(cards=[card])), target)

        assert target.issues[1].description == "cc @jdoe"
        assert target.notes[1][1].body == "@jdoe said hi"
        assert len(target.calls_named("edit_note")) == 1
        assert target.calls_named("create_issue") == []

    def test_move_custom_fields_twice_appends_once(self, options: ConverterOptions) -> None:
        card = make_card("c1", "ab12", "Card")
        target = FakeTarget()
        _migrated(target, 1, card, "Body")
        source = FakeSource(SourceBoard(cards=[card]))
        source.custom_fields = [CustomFieldDefinition("f1", "Size", "text")]
        source.custom_field_items = {"c1": [CustomFieldItem("f1", value="L")]}
        options.global_options.action = ConverterAction.MOVE_CUSTOM_FIELDS

        _ = migrate(options, source, target)
        _ = migrate(options, source, target)

        assert target.issues[1].description == f"Body\n\n{CUSTOM_FIELDS_HEADING}\n\n- **Size**: L\n"
        assert len(target.calls_named("edit_issue")) == 1

    def test_associate_with_trello(self, options: ConverterOptions) -> None:
        legacy = make_card("c1", "ab12", "Legacy card")
        orphan = make_card("c2", "cd34", "No issue for me")
        target = FakeTarget()
        _ = target.add_issue(1, "Legacy card")
        options.global_options.action = ConverterAction.ASSOCIATE_WITH_TRELLO
        source = FakeSource(SourceBoard(cards=[legacy, orphan]))

        _, collector = migrate(options, source, target)
        _ = migrate(options, source, target)

        ((iid, body, _, _),) = target.calls_named("create_note")
        assert iid == 1
        assert "card:c1 " in body
        assert any(info.startswith("No unique issue found for card c2") for info in collector.infos)

    def test_replace_trello_links(self, options: ConverterOptions) -> None:
        card_a = make_card("c-a", "aa11", "Card A")
        card_b = make_card("c-b", "bb22", "Card B")
        target = FakeTarget()
        _migrated(target, 1, card_a, f"[{TRELLO_URL}/c/bb22]({TRELLO_URL}/c/bb22 \"smartCard-inline\")")
        _migrated(target, 2, card_b)
        options.global_options.action = ConverterAction.REPLACE_TRELLO_LINKS

        _ = migrate(options, FakeSource(SourceBoard(cards=[card_a, card_b])), target)

        assert target.issues[1].description == "#2"

    def test_delete_issues(self, options: ConverterOptions) -> None:
        target = FakeTarget()
        for iid in range(1, 6):
            _ = target.add_issue(iid, f"Issue {iid}")
        options.global_options.action = ConverterAction.DELETE_ISSUES
        options.global_options.delete_if_greater_than_issue_id = 3

        _, collector = migrate(options, FakeSource(), target)

        assert sorted(target.issues) == [1, 2, 3]
        assert "2 issues deleted." in collector.infos
