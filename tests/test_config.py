"""Tests for config loading."""

import time
from pathlib import Path
from textwrap import dedent

import pytest

from nyati.config import (
    check_version,
    find_config_file,
    load_config,
    load_env_file,
    parse_config,
)
from nyati.exceptions import ConfigError, ErrorTypes

MIN_VERSION = "0.1.2"

BASIC_CONFIG = """\
version: "0.1.2"
appname: myapp
hosts:
  server1:
    host: example.com
    username: deploy
    password: secret
  server2:
    host: 10.0.0.2
    username: deploy
    private_key: ~/.ssh/id_ed25519
    envfile: .env.production
    port: 2222
params:
  env: prod
  branch: develop
tasks:
  - name: clean
    cmd: ls -dt1 */ | tail -n +5 | xargs rm -rf
    dir: /var/www/html/${appname}/releases
    message: older deployments cleaned
    output: 1
    lib: 1
  - name: new_release
    cmd: mkdir -p /var/www/html/${appname}/releases/${release_version}
  - name: git_clone
    cmd: git clone -b ${branch} repo /var/www/html/${appname}/releases/${release_version}
    depends_on: ["new_release"]
  - name: chgrp
    cmd: sudo chgrp -R www-data dist
    askpass: true
    retry: yes
    expect: 0
    depends_on: git_clone
  - name: publish
    cmd: ln -sfn releases/${release_version} current
    message: Deployed ${appname} to ${env} as ${release_version}
"""


def write_config(tmp_path, content, name="nyati.yaml"):
    path = tmp_path / name
    path.write_text(dedent(content))
    return path


def minimal(**overrides):
    raw = {
        "version": "0.1.2",
        "appname": "myapp",
        "hosts": {"server1": {"host": "example.com", "username": "deploy", "password": "x"}},
        "tasks": [{"name": "one", "cmd": "true"}],
    }
    raw.update(overrides)
    return raw


class TestLoadConfig:
    """Tests for loading a complete config file."""

    def test_load_basic(self, tmp_path):
        config = load_config(write_config(tmp_path, BASIC_CONFIG), MIN_VERSION)

        assert config.appname == "myapp"
        assert config.version == "0.1.2"
        assert list(config.hosts) == ["server1", "server2"]
        assert [task.name for task in config.tasks] == [
            "clean", "new_release", "git_clone", "chgrp", "publish",
        ]
        assert config.params == {"env": "prod", "branch": "develop"}
        assert config.on_failure == "continue"
        assert config.source_path == (tmp_path / "nyati.yaml").resolve()

    def test_hosts(self, tmp_path):
        config = load_config(write_config(tmp_path, BASIC_CONFIG), MIN_VERSION)

        server1 = config.hosts["server1"]
        assert server1.name == "server1"
        assert server1.password == "secret"
        assert server1.port == 22
        assert not server1.uses_key_auth

        server2 = config.hosts["server2"]
        assert server2.private_key == "~/.ssh/id_ed25519"
        assert server2.envfile == ".env.production"
        assert server2.port == 2222
        assert server2.uses_key_auth

    def test_task_flags_and_defaults(self, tmp_path):
        config = load_config(write_config(tmp_path, BASIC_CONFIG), MIN_VERSION)

        clean = config.get_task("clean")
        assert clean.lib is True
        assert clean.output is True
        assert clean.retry is False
        assert clean.expect == 0

        chgrp = config.get_task("chgrp")
        assert chgrp.askpass is True
        assert chgrp.retry is True
        assert chgrp.depends_on == ("git_clone",)

        assert config.get_task("git_clone").depends_on == ("new_release",)
        assert config.get_task("missing") is None

    def test_substitution_applied(self, tmp_path):
        config = load_config(write_config(tmp_path, BASIC_CONFIG), MIN_VERSION)
        release = str(config.release_version)

        assert config.get_task("clean").dir == "/var/www/html/myapp/releases"
        assert config.get_task("new_release").cmd == f"mkdir -p /var/www/html/myapp/releases/{release}"
        assert config.get_task("git_clone").cmd.startswith("git clone -b develop repo")
        assert config.get_task("publish").message == f"Deployed myapp to prod as {release}"

    def test_release_version_is_epoch_millis(self, tmp_path):
        before = int(time.time() * 1000)
        config = load_config(write_config(tmp_path, BASIC_CONFIG), MIN_VERSION)
        after = int(time.time() * 1000)

        assert before - 1 <= config.release_version <= after + 1

    def test_release_version_differs_between_loads(self, tmp_path):
        path = write_config(tmp_path, BASIC_CONFIG)
        first = load_config(path, MIN_VERSION)
        time.sleep(0.01)
        second = load_config(path, MIN_VERSION)

        assert first.release_version != second.release_version
        assert first.get_task("publish").message != second.get_task("publish").message

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path / "nope.yaml", MIN_VERSION)
        assert exc_info.value.error_type == ErrorTypes.CONFIG_NOT_FOUND

    def test_invalid_yaml(self, tmp_path):
        path = write_config(tmp_path, "appname: [unclosed\n")
        with pytest.raises(ConfigError, match="failed to read config"):
            load_config(path, MIN_VERSION)

    def test_duplicate_host_keys(self, tmp_path):
        content = """\
        version: "0.1.2"
        appname: myapp
        hosts:
          server1: {host: a, username: u, password: p}
          server1: {host: b, username: u, password: p}
        tasks:
          - {name: one, cmd: "true"}
        """
        with pytest.raises(ConfigError, match="duplicate key"):
            load_config(write_config(tmp_path, content), MIN_VERSION)

    def test_merge_key_shares_credentials(self, tmp_path):
        content = """\
        version: "0.1.2"
        appname: myapp
        hosts:
          server1: &creds
            host: a.example.com
            username: deploy
            password: secret
          server2:
            <<: *creds
            host: b.example.com
          server3:
            <<: *creds
            host: c.example.com
            password: other
        tasks:
          - {name: one, cmd: "true"}
        """
        config = load_config(write_config(tmp_path, content), MIN_VERSION)

        server2 = config.hosts["server2"]
        assert server2.host == "b.example.com"
        assert server2.username == "deploy"
        assert server2.password == "secret"
        assert config.hosts["server3"].password == "other"

    def test_duplicate_key_next_to_merge_key(self, tmp_path):
        content = """\
        version: "0.1.2"
        appname: myapp
        hosts:
          server1: &creds {host: a, username: u, password: p}
          server2:
            <<: *creds
            host: b
            host: c
        tasks:
          - {name: one, cmd: "true"}
        """
        with pytest.raises(ConfigError, match="duplicate key 'host'"):
            load_config(write_config(tmp_path, content), MIN_VERSION)

    def test_on_failure_policy(self, tmp_path):
        content = BASIC_CONFIG + "on_failure: abort\n"
        config = load_config(write_config(tmp_path, content), MIN_VERSION)
        assert config.on_failure == "abort"


class TestParseConfigErrors:
    """Tests for config validation failures."""

    def test_missing_appname(self):
        raw = minimal()
        del raw["appname"]
        with pytest.raises(ConfigError, match="appname is required"):
            parse_config(raw, MIN_VERSION)

    def test_empty_appname(self):
        with pytest.raises(ConfigError, match="appname is required"):
            parse_config(minimal(appname=""), MIN_VERSION)

    def test_no_hosts(self):
        with pytest.raises(ConfigError, match="at least one host is required"):
            parse_config(minimal(hosts={}), MIN_VERSION)

    def test_no_tasks(self):
        with pytest.raises(ConfigError, match="at least one task is required"):
            parse_config(minimal(tasks=[]), MIN_VERSION)

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError, match="expected a mapping"):
            parse_config(["not", "a", "mapping"], MIN_VERSION)

    def test_host_missing_address(self):
        hosts = {"server1": {"username": "deploy", "password": "x"}}
        with pytest.raises(ConfigError, match="host 'server1': host is required"):
            parse_config(minimal(hosts=hosts), MIN_VERSION)

    def test_task_missing_cmd(self):
        with pytest.raises(ConfigError, match="task 'one': cmd is required"):
            parse_config(minimal(tasks=[{"name": "one"}]), MIN_VERSION)

    def test_task_missing_name(self):
        with pytest.raises(ConfigError, match="task at index 0: name is required"):
            parse_config(minimal(tasks=[{"cmd": "true"}]), MIN_VERSION)

    def test_duplicate_task_names(self):
        tasks = [{"name": "one", "cmd": "true"}, {"name": "one", "cmd": "false"}]
        with pytest.raises(ConfigError, match="duplicate task name 'one' at index 1"):
            parse_config(minimal(tasks=tasks), MIN_VERSION)

    def test_missing_dependency(self):
        tasks = [{"name": "one", "cmd": "true", "depends_on": ["nonexistent"]}]
        with pytest.raises(ConfigError) as exc_info:
            parse_config(minimal(tasks=tasks), MIN_VERSION)

        message = str(exc_info.value)
        assert "'one'" in message
        assert "'nonexistent'" in message

    def test_cycle(self):
        tasks = [
            {"name": "A", "cmd": "true", "depends_on": ["B"]},
            {"name": "B", "cmd": "true", "depends_on": ["A"]},
        ]
        with pytest.raises(ConfigError, match="A -> B -> A"):
            parse_config(minimal(tasks=tasks), MIN_VERSION)

    def test_bad_expect(self):
        tasks = [{"name": "one", "cmd": "true", "expect": "zero"}]
        with pytest.raises(ConfigError, match="expected an integer"):
            parse_config(minimal(tasks=tasks), MIN_VERSION)

    def test_bad_flag(self):
        tasks = [{"name": "one", "cmd": "true", "retry": "sometimes"}]
        with pytest.raises(ConfigError, match="expected a boolean"):
            parse_config(minimal(tasks=tasks), MIN_VERSION)

    def test_bad_policy(self):
        with pytest.raises(ConfigError, match="invalid policy"):
            parse_config(minimal(on_failure="retry"), MIN_VERSION)

    def test_non_string_params_are_coerced(self):
        config = parse_config(minimal(params={"port": 8080, "debug": True}), MIN_VERSION)
        assert config.params == {"port": "8080", "debug": "True"}


class TestCheckVersion:
    """Tests for config version compatibility."""

    def test_same_version(self):
        check_version("0.1.2", "0.1.2")

    def test_newer_patch(self):
        check_version("0.1.5", "0.1.2")

    def test_older_patch(self):
        with pytest.raises(ConfigError, match="outdated") as exc_info:
            check_version("0.1.1", "0.1.2")
        assert exc_info.value.error_type == ErrorTypes.VERSION_MISMATCH

    def test_other_minor_series(self):
        with pytest.raises(ConfigError):
            check_version("0.2.0", "0.1.2")

    def test_missing_version(self):
        with pytest.raises(ConfigError, match="missing"):
            check_version("", "0.1.2")


class TestConfigFiles:
    """Tests for config and env file discovery."""

    def test_find_yaml(self, tmp_path):
        (tmp_path / "nyati.yaml").write_text("")
        assert find_config_file(tmp_path) == tmp_path / "nyati.yaml"

    def test_find_yml(self, tmp_path):
        (tmp_path / "nyati.yml").write_text("")
        assert find_config_file(tmp_path) == tmp_path / "nyati.yml"

    def test_find_none(self, tmp_path):
        with pytest.raises(ConfigError, match="no config file found"):
            find_config_file(tmp_path)

    def test_load_env_file(self, tmp_path):
        envfile = tmp_path / ".env"
        envfile.write_text("# settings\nAPP_ENV=prod\nQUOTED=\"a b\"\n\nBARE\n")
        assert load_env_file(envfile) == {"APP_ENV": "prod", "QUOTED": "a b", "BARE": ""}

    def test_load_env_file_missing(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_env_file(tmp_path / "missing.env")


def test_example_config_loads():
    example = Path(__file__).resolve().parent.parent / "examples" / "nyati.yaml"
    config = load_config(example, MIN_VERSION)

    assert config.appname == "myapp"
    assert config.get_task("clean").lib
    assert config.get_task("yarn_build").depends_on == ("yarn_install", "setup .env")
