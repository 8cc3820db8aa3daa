"""
Scenario tests for the StoryWorkflow application controller
"""
import json
from unittest.mock import patch

from core.exceptions import NotFoundError, PersistenceError
from core.schemas import AppState, ExportOptions, OutputMode, SubscriptionTier, UsageKind
from core.state import logged_out_state
from infra.storage import state_store
from services.workflow import StoryWorkflow
from tests.conftest import TEST_USER_ID


def _kinds(state: AppState):
    return [n.kind for n in state.notifications]


class TestSessionAndOnboarding:
    """Tests for opening a session and onboarding"""

    def test_new_user_needs_onboarding(self, workflow):
        assert workflow.state.user_id == TEST_USER_ID
        assert workflow.state.needs_onboarding
        assert workflow.state.projects == ()

    def test_complete_onboarding(self, workflow, profile_store):
        assert workflow.complete_onboarding("Ada", ["Fantasy"])

        assert not workflow.state.needs_onboarding
        assert workflow.state.profile.display_name == "Ada"
        assert profile_store.get(TEST_USER_ID).onboarding_completed

    def test_skip_onboarding_is_remembered(self, workflow):
        workflow.skip_onboarding()
        workflow.open_session(TEST_USER_ID)
        assert not workflow.state.needs_onboarding

    def test_restores_last_active_project(self, workflow, make_project, project_repo, version_store,
                                          profile_store, state_dir):
        project = make_project(workflow, idea="A clockmaker stops time")

        fresh = StoryWorkflow(project_repo, version_store, profile_store, state_dir=state_dir)
        fresh.open_session(TEST_USER_ID)

        assert fresh.state.active_project.id == project.id
        assert fresh.state.raw_idea == "A clockmaker stops time"

    def test_restores_idea_draft(self, workflow, project_repo, version_store, profile_store, state_dir):
        workflow.set_raw_idea("A lighthouse keeper finds a map")

        fresh = StoryWorkflow(project_repo, version_store, profile_store, state_dir=state_dir)
        fresh.open_session(TEST_USER_ID)

        assert fresh.state.raw_idea == "A lighthouse keeper finds a map"

    def test_logout_resets_everything(self, pro_workflow, make_project):
        make_project(pro_workflow)
        pro_workflow.usage.check_and_increment(UsageKind.SINGLE_STAGE_GENERATIONS)

        pro_workflow.logout()

        assert pro_workflow.state == logged_out_state()
        assert pro_workflow.usage.tier == SubscriptionTier.FREE
        assert pro_workflow.usage.state.single_stage_generations == 0


class TestProjectCreation:
    """Tests for the framework selection and title flow"""

    def test_blank_title_gets_dated_name(self, workflow, version_store, clock):
        workflow.start_new_story()
        workflow.provider_available = lambda: False
        assert workflow.select_framework("storyCircle")
        assert workflow.state.awaiting_title

        project = workflow.submit_project_title("   ")

        assert project.name.startswith("Untitled Story (")
        assert clock.current.strftime("%Y-%m-%d") in project.name
        assert workflow.state.active_project.id == project.id
        assert workflow.state.pending_project is None
        assert not workflow.state.awaiting_title
        assert [v.version_name for v in version_store.list_versions(project.id, TEST_USER_ID)] == ["Project Created"]

    def test_idea_mapped_before_title(self, workflow, use_llm):
        use_llm(json.dumps({"you": "A baker", "need": "wants fame"}))
        workflow.set_raw_idea("A baker who wants fame")

        assert workflow.select_framework("storyCircle")

        pending = workflow.state.pending_project
        assert pending.stages_content["you"] == "A baker"
        assert pending.stages_content["change"] == ""
        assert pending.raw_story_idea == "A baker who wants fame"
        assert not workflow.state.loading_mapping

        project = workflow.submit_project_title("Bread")
        assert project.raw_story_idea == "A baker who wants fame"
        assert project.stage_text("need") == "wants fame"
        assert workflow.state.raw_idea == ""

    def test_mapping_failure_returns_to_idle(self, workflow, use_llm):
        use_llm("not json at all")
        workflow.set_raw_idea("Something")

        assert not workflow.select_framework("storyCircle")

        state = workflow.state
        assert state.pending_project is None
        assert not state.awaiting_title
        assert not state.loading_mapping
        assert "Failed to map" in state.error

    def test_cancel_title_input(self, workflow):
        workflow.provider_available = lambda: False
        workflow.select_framework("storyCircle")

        workflow.cancel_title_input()

        assert workflow.state.pending_project is None
        assert not workflow.state.awaiting_title

    def test_free_project_limit(self, workflow, make_project):
        for i in range(3):
            make_project(workflow, title=f"Story {i}")

        assert not workflow.start_new_story()
        assert workflow.state.upgrade_prompt == "project_limit"
        assert not workflow.select_framework("storyCircle")
        assert len(workflow.state.projects) == 3

    def test_unknown_framework(self, workflow):
        assert not workflow.select_framework("nope")
        assert workflow.state.error


class TestStageEditing:
    """Tests for optimistic stage updates"""

    def test_update_persists_and_snapshots(self, workflow, make_project, project_repo, version_store):
        project = make_project(workflow)

        assert workflow.update_stage_content("setup", "Mira fixes drones.")

        assert workflow.state.active_project.stage_text("setup") == "Mira fixes drones."
        assert project_repo.get(project.id, TEST_USER_ID).stage_text("setup") == "Mira fixes drones."
        latest = version_store.list_versions(project.id, TEST_USER_ID)[0]
        assert latest.version_name == "Stage: 'Stage 1: The Setup' Updated"

    def test_failed_update_rolls_back(self, workflow, make_project, project_repo):
        make_project(workflow, title="A")
        make_project(workflow, title="B")
        before_projects = workflow.state.projects
        before_active = workflow.state.active_project

        with patch.object(project_repo, "update", side_effect=PersistenceError("db down")):
            assert not workflow.update_stage_content("setup", "lost text")

        assert workflow.state.projects == before_projects
        assert workflow.state.active_project == before_active
        assert "db down" in workflow.state.error

    def test_update_of_project_deleted_elsewhere(self, workflow, make_project, project_repo, state_dir):
        other = make_project(workflow, title="Other")
        project = make_project(workflow, title="Gone")
        project_repo.delete(project.id, TEST_USER_ID)
        workflow.dismiss_notifications()

        assert not workflow.update_stage_content("setup", "x")

        assert [p.id for p in workflow.state.projects] == [other.id]
        assert workflow.state.active_project is None
        assert workflow.state.error is None
        assert _kinds(workflow.state) == ["warning"]
        assert "already deleted" in workflow.state.notifications[0].message
        key = state_store.last_active_project_key(TEST_USER_ID)
        assert state_store.load_value(key, None, state_dir) is None

    def test_refused_during_bulk_operation(self, workflow, make_project, project_repo):
        make_project(workflow)
        workflow._set(generating_all_stages=True)

        with patch.object(project_repo, "update") as update:
            assert not workflow.update_stage_content("setup", "x")
        update.assert_not_called()

    def test_snapshot_failure_is_not_fatal(self, workflow, make_project, version_store):
        make_project(workflow)

        with patch.object(version_store, "snapshot", side_effect=PersistenceError("no versions")):
            assert workflow.update_stage_content("setup", "kept")

        assert workflow.state.active_project.stage_text("setup") == "kept"
        assert "error" in _kinds(workflow.state)


class TestSingleStageAssist:
    """Tests for quota-gated single stage AI"""

    def test_suggestion_staged_then_accepted(self, workflow, make_project, use_llm):
        make_project(workflow)
        use_llm("Mira wakes to the hum of drones.")

        suggestion = workflow.generate_stage_suggestion("setup", OutputMode.CREATIVE)

        assert suggestion == "Mira wakes to the hum of drones."
        assert workflow.state.active_project.stage_text("setup") == ""
        assert workflow.accept_stage_suggestion()
        assert workflow.state.active_project.stage_text("setup") == suggestion
        assert workflow.state.assist is None

    def test_free_quota_exhaustion(self, workflow, make_project, use_llm):
        make_project(workflow)
        mock = use_llm("text")

        results = [workflow.generate_stage_suggestion("setup") for _ in range(6)]

        assert results[:5] == ["text"] * 5
        assert results[5] is None
        assert mock.call_count == 5
        assert workflow.state.upgrade_prompt == "ai_limit_single_stage_generations"

    def test_clarifying_questions(self, workflow, make_project, use_llm):
        make_project(workflow)
        use_llm(json.dumps({"questions": ["Why drones?", "Where is home?"]}))

        questions = workflow.request_clarifying_questions("setup")

        assert questions == ["Why drones?", "Where is home?"]
        assert workflow.state.assist.questions == ("Why drones?", "Where is home?")
        assert workflow.usage.state.clarifying_questions == 1

    def test_provider_error_shown_in_panel(self, workflow, make_project, use_llm):
        project = make_project(workflow)
        use_llm("oops")

        assert workflow.request_clarifying_questions("setup") == []
        assert workflow.state.assist.error
        assert workflow.state.active_project == project


class TestFullStoryAssist:
    """Tests for full story drafting and completion"""

    def test_free_tier_blocked_without_call(self, workflow, make_project, mock_get_llm):
        make_project(workflow, idea="A heist on Mars")

        assert not workflow.open_full_story_assist()

        assert workflow.state.upgrade_prompt == "full_story_ai"
        assert workflow.usage.state.full_story_drafters == 0
        mock_get_llm.assert_not_called()

    def test_full_draft_applied(self, pro_workflow, make_project, use_llm, six_stage_framework, version_store):
        project = make_project(pro_workflow, idea="A heist on Mars")
        use_llm(json.dumps({stage_id: f"Draft {stage_id}" for stage_id in six_stage_framework.stage_ids}))

        assert pro_workflow.open_full_story_assist()
        assert not pro_workflow.state.assist.completion_mode
        result = pro_workflow.generate_all_stages(OutputMode.CREATIVE)
        assert pro_workflow.state.active_project.stage_text("setup") == ""

        assert pro_workflow.accept_all_stages_suggestion()

        active = pro_workflow.state.active_project
        assert active.stages_content == result
        assert active.raw_story_idea == "A heist on Mars"
        assert version_store.list_versions(project.id, TEST_USER_ID)[0].version_name == "Full Story Draft Applied"
        assert not pro_workflow.state.generating_all_stages
        assert pro_workflow.usage.state.full_story_drafters == 1

    def test_completion_mode_keeps_filled_stages(self, pro_workflow, make_project, use_llm, six_stage_framework):
        make_project(pro_workflow)
        pro_workflow.update_stage_content("setup", "My own opening.")
        use_llm(json.dumps({stage_id: f"AI {stage_id}" for stage_id in six_stage_framework.stage_ids}))

        assert pro_workflow.open_full_story_assist()
        assert pro_workflow.state.assist.completion_mode
        result = pro_workflow.generate_all_stages(OutputMode.OUTLINE)

        assert result["setup"] == "My own opening."
        assert result["climaxAndResolution"] == "AI climaxAndResolution"

    def test_nothing_to_do_without_idea_or_content(self, pro_workflow, make_project, mock_get_llm):
        make_project(pro_workflow)

        assert not pro_workflow.open_full_story_assist()
        assert pro_workflow.usage.state.full_story_drafters == 0
        mock_get_llm.assert_not_called()

    def test_generation_error_leaves_project_untouched(self, pro_workflow, make_project, use_llm):
        project = make_project(pro_workflow, idea="idea")
        use_llm("definitely not json")
        pro_workflow.open_full_story_assist()

        assert pro_workflow.generate_all_stages() is None

        assert pro_workflow.state.assist.error
        assert pro_workflow.state.active_project == project
        assert not pro_workflow.state.generating_all_stages

    def test_accept_failure_rolls_back(self, pro_workflow, make_project, project_repo):
        project = make_project(pro_workflow)
        before = pro_workflow.state.projects

        with patch.object(project_repo, "update", side_effect=PersistenceError("write failed")):
            assert not pro_workflow.accept_all_stages_suggestion({"setup": "new"})

        assert pro_workflow.state.projects == before
        assert pro_workflow.state.active_project == project
        assert "error" in _kinds(pro_workflow.state)
        assert not pro_workflow.state.generating_all_stages

    def test_accept_for_project_deleted_elsewhere(self, pro_workflow, make_project, project_repo):
        project = make_project(pro_workflow)
        project_repo.delete(project.id, TEST_USER_ID)

        assert not pro_workflow.accept_all_stages_suggestion({"setup": "new"})

        assert pro_workflow.state.projects == ()
        assert pro_workflow.state.active_project is None
        assert _kinds(pro_workflow.state)[-1] == "warning"
        assert not pro_workflow.state.generating_all_stages


class TestHistory:
    """Tests for version history and revert"""

    def test_revert_then_revert_back(self, workflow, make_project):
        make_project(workflow, idea="Original idea")
        workflow.update_stage_content("setup", "Version A")
        versions = workflow.open_project_history()
        target = versions[0]
        workflow.update_stage_content("setup", "Version B")

        assert workflow.revert_to_version(target.id)
        assert workflow.state.active_project.stage_text("setup") == "Version A"

        revert_version = workflow.state.versions[0]
        assert revert_version.version_name.startswith("Reverted to version from ")
        workflow.update_stage_content("setup", "Version C")

        assert workflow.revert_to_version(revert_version.id)
        active = workflow.state.active_project
        assert active.stage_text("setup") == "Version A"
        assert active.raw_story_idea == target.raw_story_idea == "Original idea"
        assert workflow.state.reverting_version_id is None

    def test_revert_unknown_version(self, workflow, make_project):
        make_project(workflow)
        assert not workflow.revert_to_version(99999)
        assert "error" in _kinds(workflow.state)

    def test_revert_refused_while_deleting(self, workflow, make_project, project_repo):
        make_project(workflow)
        version = workflow.open_project_history()[0]
        workflow._set(processing_delete=True)

        with patch.object(project_repo, "update") as update:
            assert not workflow.revert_to_version(version.id)
        update.assert_not_called()

    def test_revert_of_project_deleted_elsewhere(self, workflow, make_project, project_repo):
        project = make_project(workflow)
        version = workflow.open_project_history()[0]
        project_repo.delete(project.id, TEST_USER_ID)

        assert not workflow.revert_to_version(version.id)

        assert workflow.state.projects == ()
        assert workflow.state.active_project is None
        assert workflow.state.versions == ()
        assert workflow.state.reverting_version_id is None
        assert _kinds(workflow.state)[-1] == "warning"


class TestDeletion:
    """Tests for the delete confirmation flow"""

    def test_delete_active_project(self, workflow, make_project, project_repo):
        project = make_project(workflow)

        assert workflow.attempt_delete(project.id)
        assert workflow.confirm_delete()

        assert workflow.state.projects == ()
        assert workflow.state.active_project is None
        assert project_repo.get(project.id, TEST_USER_ID) is None
        assert _kinds(workflow.state)[-1] == "success"

    def test_already_deleted_on_server(self, workflow, make_project, project_repo):
        project = make_project(workflow)
        project_repo.delete(project.id, TEST_USER_ID)
        workflow.dismiss_notifications()

        workflow.attempt_delete(project.id)
        assert workflow.confirm_delete()

        assert workflow.state.projects == ()
        assert workflow.state.error is None
        assert _kinds(workflow.state) == ["warning"]
        assert "already deleted" in workflow.state.notifications[0].message

    def test_indeterminate_delete_keeps_local_list(self, workflow, make_project, project_repo):
        project = make_project(workflow)
        workflow.attempt_delete(project.id)

        with patch.object(project_repo, "delete", side_effect=PersistenceError("Server did not confirm deletion count.")):
            assert not workflow.confirm_delete()

        assert [p.id for p in workflow.state.projects] == [project.id]
        assert _kinds(workflow.state)[-1] == "error"
        assert not workflow.state.processing_delete

    def test_cancel_delete(self, workflow, make_project):
        project = make_project(workflow)
        workflow.attempt_delete(project.id)
        workflow.cancel_delete()
        assert workflow.state.project_to_delete is None
        assert not workflow.confirm_delete()

    def test_not_found_error_type_is_warning(self, workflow, make_project, project_repo):
        project = make_project(workflow)
        workflow.attempt_delete(project.id)
        with patch.object(project_repo, "delete", side_effect=NotFoundError("gone")):
            workflow.confirm_delete()
        assert workflow.state.notifications[-1].kind == "warning"


class TestUpgradeAndExport:
    """Tests for the PRO switch and export gate"""

    def test_export_requires_pro(self, workflow, make_project):
        make_project(workflow)

        assert workflow.export_project("markdown") is None
        assert workflow.state.upgrade_prompt == "export"

    def test_upgrade_resets_usage(self, workflow, make_project, use_llm):
        make_project(workflow)
        use_llm("t")
        for _ in range(5):
            workflow.generate_stage_suggestion("setup")

        workflow.upgrade_to_pro()

        assert workflow.state.tier == SubscriptionTier.PRO
        assert workflow.state.upgrade_prompt is None
        assert workflow.usage.remaining(UsageKind.SINGLE_STAGE_GENERATIONS) == 100

    def test_pro_export_markdown(self, pro_workflow, make_project):
        make_project(pro_workflow, title="Red Planet")
        pro_workflow.update_stage_content("setup", "Dust everywhere.")

        result = pro_workflow.export_project("markdown", ExportOptions(include_stage_titles=True,
                                                                       include_continuous_narrative=True))

        text = result.content.decode("utf-8")
        assert result.filename == "red_planet.md"
        assert "Dust everywhere." in text
        assert "[No content for this stage]" in text
        assert "Continuous Narrative" not in text

    def test_dismissals(self, workflow):
        workflow.start_new_story()
        workflow._set(upgrade_prompt="project_limit")
        workflow.dismiss_upgrade_prompt()
        workflow.dismiss_notifications()
        assert workflow.state.upgrade_prompt is None
        assert workflow.state.notifications == ()
