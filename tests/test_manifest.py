"""
Tests for the profile manifest.
"""

import pytest

from snapkg.manifest import ProfileManifest


@pytest.mark.unit
class TestManifestSets:
    """Tests for set membership rules."""

    def test_profile_add_skips_system_packages(self):
        manifest = ProfileManifest(system_packages=["bash"])

        assert manifest.add("profile", "bash") is False
        assert manifest.profile_packages == []
        assert manifest.is_system_package("bash")

    def test_add_is_deduplicated(self):
        manifest = ProfileManifest()

        assert manifest.add("profile", "vim") is True
        assert manifest.add("profile-packages", "vim") is False
        assert manifest.profile_packages == ["vim"]

    def test_system_add_moves_out_of_profile(self):
        manifest = ProfileManifest(profile_packages=["git"])

        assert manifest.add("system", "git") is True
        assert manifest.system_packages == ["git"]
        assert manifest.profile_packages == []

    def test_remove_and_discard(self):
        manifest = ProfileManifest(system_packages=["bash"], profile_packages=["vim"])

        assert manifest.remove("system", "vim") is False
        assert manifest.discard("vim") == "profile-packages"
        assert manifest.discard("bash") == "system-packages"
        assert manifest.discard("nano") is None

    def test_contains(self):
        manifest = ProfileManifest(profile_packages=["vim"])
        assert manifest.contains("profile", "vim")
        assert not manifest.contains("system", "vim")

    def test_unknown_set_name(self):
        with pytest.raises(ValueError):
            ProfileManifest().add("user", "vim")

    def test_empty_package_name(self):
        with pytest.raises(ValueError):
            ProfileManifest().add("profile", "  ")

    def test_locked_flag(self):
        assert ProfileManifest(locked=True).is_locked()
        assert not ProfileManifest().is_locked()


@pytest.mark.unit
class TestManifestFile:
    """Tests for load/save."""

    def test_save_is_sorted_whole_file(self, tmp_path):
        path = tmp_path / "profile"
        manifest = ProfileManifest(path, system_packages=["coreutils", "bash"])
        for pkg in ["zsh", "git", "vim"]:
            manifest.add("profile", pkg)
        manifest.save()

        lines = [l for l in path.read_text().splitlines() if l and not l.startswith("#")]
        assert lines == [
            "[system-packages]", "bash", "coreutils",
            "[profile-packages]", "git", "vim", "zsh",
            "[uninstall-commands]",
        ]

    def test_round_trip_keeps_uninstall_commands(self, tmp_path):
        path = tmp_path / "profile"
        ProfileManifest(
            path,
            system_packages=["bash"],
            profile_packages=["Vim-Plugin"],
            uninstall_commands=["systemctl disable sshd", "rm -rf /opt/thing"],
        ).save()

        loaded = ProfileManifest.load(path, locked=True)
        assert loaded.system_packages == ["bash"]
        assert loaded.profile_packages == ["Vim-Plugin"]
        assert loaded.uninstall_commands() == ["systemctl disable sshd", "rm -rf /opt/thing"]
        assert loaded.is_locked()

    def test_uninstall_commands_kept_verbatim(self, tmp_path):
        path = tmp_path / "profile"
        commands = [
            "sed -i s/a=b/c/ /etc/x",
            "[ -f /opt/x ] && rm /opt/x",
            "env FOO = bar true",
        ]
        ProfileManifest(path, uninstall_commands=commands).save()

        loaded = ProfileManifest.load(path)
        assert loaded.uninstall_commands() == commands
        assert loaded.system_packages == []
        assert loaded.profile_packages == []

    def test_load_hand_written_file(self, tmp_path):
        path = tmp_path / "profile"
        path.write_text(
            "# my profile\n"
            "[system-packages]\n"
            "bash\n"
            "vim\n"
            "\n"
            "[profile-packages]\n"
            "vim\n"
            "firefox\n"
        )
        manifest = ProfileManifest.load(path)

        assert manifest.system_packages == ["bash", "vim"]
        assert manifest.profile_packages == ["firefox"]
        assert manifest.uninstall_commands() == []

    def test_missing_section_is_corrupt(self, tmp_path):
        from common.exceptions import CorruptStateError

        path = tmp_path / "profile"
        path.write_text("[system-packages]\nbash\n")
        with pytest.raises(CorruptStateError):
            ProfileManifest.load(path)

    def test_garbage_is_corrupt(self, tmp_path):
        from common.exceptions import CorruptStateError

        path = tmp_path / "profile"
        path.write_text("bash\nvim\n")
        with pytest.raises(CorruptStateError):
            ProfileManifest.load(path)

    def test_create_from_template(self, tmp_path):
        path = tmp_path / "etc" / "snapkg" / "profile"
        ProfileManifest.create(path, system_packages=["linux", "base"])

        text = path.read_text()
        assert text.startswith("# snapkg profile")
        assert ProfileManifest.load(path).system_packages == ["base", "linux"]

    def test_save_without_path(self):
        with pytest.raises(ValueError):
            ProfileManifest().save()


@pytest.mark.unit
class TestTemplateLoader:
    """Tests for template lookup order."""

    def test_override_path_wins(self, tmp_path):
        from snapkg.templates import TemplateLoader

        (tmp_path / "profile.ini.j2").write_text("# site profile\n[system-packages]\n")
        loader = TemplateLoader(additional_paths=[tmp_path])

        assert loader.render(
            "profile.ini.j2", system_packages=[], profile_packages=[], uninstall_commands=[]
        ) == "# site profile\n[system-packages]\n"

    def test_unknown_template(self):
        from common.exceptions import TemplateNotFoundError
        from snapkg.templates import TemplateLoader

        loader = TemplateLoader()
        assert loader.template_exists("profile.ini.j2")
        assert not loader.template_exists("missing.j2")
        with pytest.raises(TemplateNotFoundError):
            loader.render("missing.j2")

    def test_missing_variable(self):
        from common.exceptions import TemplateRenderError
        from snapkg.templates import TemplateLoader

        with pytest.raises(TemplateRenderError):
            TemplateLoader().render("profile.ini.j2")
