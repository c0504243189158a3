"""
SQLite 持久化测试
"""
from core.schemas import StoryBible
from infra.storage import sql_db
from infra.storage.sql_db import SQLStore


class TestStageOutputs:

    def test_save_and_read_back(self, tmp_path):
        # Arrange
        root = str(tmp_path / "project")

        # Act
        assert sql_db.save_stage_output(root, "character_design", [{"name": "林风"}], "approved", "cp_1", 0.02)
        outputs = sql_db.get_stage_outputs(root)

        # Assert
        assert len(outputs) == 1
        assert outputs[0]["stage"] == "character_design"
        assert outputs[0]["data"] == [{"name": "林风"}]
        assert outputs[0]["checkpoint_id"] == "cp_1"
        assert outputs[0]["cost"] == 0.02

    def test_filter_by_stage_and_latest(self, tmp_path):
        root = str(tmp_path)
        sql_db.save_stage_output(root, "scene_outline", [{"v": 1}], "approved")
        sql_db.save_stage_output(root, "shot_list", [], "accepted")
        sql_db.save_stage_output(root, "scene_outline", [{"v": 2}], "modified")

        assert len(sql_db.get_stage_outputs(root, "scene_outline")) == 2
        assert sql_db.get_latest_stage_output(root, "scene_outline")["data"] == [{"v": 2}]
        assert sql_db.get_latest_stage_output(root, "story_bible") is None

    def test_filter_by_source_hash(self, tmp_path):
        store = SQLStore(str(tmp_path))
        store.save_stage_output("story_bible", {"tone": "正剧"}, "approved", source_hash="aaa")
        store.save_stage_output("story_bible", {"tone": "悲剧"}, "approved", source_hash="bbb")

        assert store.get_latest_stage_output("story_bible", "aaa")["data"] == {"tone": "正剧"}
        assert store.get_latest_stage_output("story_bible")["data"] == {"tone": "悲剧"}
        assert store.get_latest_stage_output("story_bible", "ccc") is None
        assert [o["source_hash"] for o in store.get_stage_outputs()] == ["aaa", "bbb"]


class TestStoryBibleState:

    def test_missing_bible(self, tmp_path):
        assert sql_db.load_story_bible(str(tmp_path)) is None

    def test_save_and_update(self, tmp_path):
        store = SQLStore(str(tmp_path))
        bible = StoryBible(locked=True, characters=[{"name": "林风"}], tone="正剧", locked_at=123)
        store.save_story_bible(bible)

        bible.tone = "悲剧"
        bible.locked = False
        store.save_story_bible(bible)
        loaded = store.load_story_bible()

        assert loaded.tone == "悲剧"
        assert loaded.locked is False
        assert loaded.locked_at == 123
        assert loaded.characters == [{"name": "林风"}]


class TestFromConfig:

    def test_disabled_returns_none(self):
        assert SQLStore.from_config({"persistence": {"enabled": False}}) is None
        assert SQLStore.from_config({}) is None

    def test_enabled(self, tmp_path):
        store = SQLStore.from_config({"persistence": {"enabled": True, "project_root": str(tmp_path)}})

        assert store.project_root == str(tmp_path)
