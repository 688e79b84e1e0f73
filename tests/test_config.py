import json

import pytest

from humrun.config import (
    App,
    ConfigError,
    HealthCheckConfig,
    ResourceLimitsConfig,
    WatchConfig,
    config_path,
    has_changed,
    load,
    save,
    validate_dependencies,
)


def web(**kwargs):
    base = dict(name="web", dir=".", command="npm dev", ports=[3000])
    base.update(kwargs)
    return App(**base)


@pytest.mark.parametrize(
    "app, ok",
    [
        (App(name="web", dir=".", command="npm run dev", ports=[3000]), True),
        (App(dir=".", command="npm run dev", ports=[3000]), False),
        (App(name="web", command="npm run dev", ports=[3000]), False),
        (App(name="web", dir=".", ports=[3000]), False),
        (App(name="web", dir=".", command="npm run dev", ports=[]), False),
        (App(name="web", dir=".", command="npm run dev", ports=[0]), False),
        (App(name="web", dir=".", command="npm run dev", ports=[70000]), False),
        (App(name="web", dir=".", command="npm run dev", ports=[3000, 3001]), True),
    ],
)
def test_validate(app, ok):
    if ok:
        assert app.validate() is None
    else:
        with pytest.raises(ConfigError):
            app.validate()


@pytest.mark.parametrize(
    "name, ok",
    [
        ("my-app", True),
        ("my app", True),
        ("my-app\x1b[31mred", False),
        ("\x1b[2Jclear-screen", False),
        ("my\x00app", False),
        ("my\napp", False),
        ("my\rapp", False),
        ("my\x07app", False),
        ("my\tapp", True),
    ],
)
def test_app_name_control_chars(name, ok):
    app = web(name=name)
    if ok:
        assert app.validate() is None
    else:
        with pytest.raises(ConfigError, match="control characters"):
            app.validate()


def test_validate_error_messages():
    with pytest.raises(ConfigError, match='missing or invalid "name"'):
        App(dir=".", command="x", ports=[1]).validate()
    with pytest.raises(ConfigError, match="1-65535"):
        web(ports=[65536]).validate()


def test_validate_optional_fields():
    with pytest.raises(ConfigError, match="restartDelay"):
        web(restart_delay=-1).validate()
    with pytest.raises(ConfigError, match="maxRestarts"):
        web(max_restarts=-1).validate()


def test_validate_new_fields():
    with pytest.raises(ConfigError, match="dependsOn"):
        web(depends_on=[""]).validate()
    with pytest.raises(ConfigError, match="healthCheck.url"):
        web(health_check=HealthCheckConfig(url="", interval=5000)).validate()
    with pytest.raises(ConfigError, match="commands"):
        web(commands={"dev": ""}).validate()
    assert (
        web(
            health_check=HealthCheckConfig(url="http://localhost:3000/health", interval=5000)
        ).validate()
        is None
    )
    with pytest.raises(ConfigError, match="watch.extensions"):
        web(watch=WatchConfig(extensions=["go"])).validate()
    assert web(watch=WatchConfig(extensions=[".go", ".ts"])).validate() is None
    assert web(watch=WatchConfig()).validate() is None


def test_validate_resource_limits():
    with pytest.raises(ConfigError, match="maxCpu"):
        web(resource_limits=ResourceLimitsConfig(max_cpu=-1.0)).validate()
    with pytest.raises(ConfigError, match="maxMemoryMB"):
        web(resource_limits=ResourceLimitsConfig(max_memory_mb=-5)).validate()


def test_config_path(tmp_path):
    assert config_path(tmp_path) == tmp_path / "apps.json"


def test_load_save(tmp_path):
    apps = [
        App(name="web", dir="packages/web", command="pnpm dev", ports=[3000]),
        App(name="api", dir="packages/api", command="npm run dev", ports=[8080, 8081]),
    ]
    save(tmp_path, apps)
    assert (tmp_path / "apps.json").exists()

    loaded = load(tmp_path)
    assert [(a.name, a.dir, a.command, a.ports) for a in loaded] == [
        ("web", "packages/web", "pnpm dev", [3000]),
        ("api", "packages/api", "npm run dev", [8080, 8081]),
    ]


def test_load_nonexistent_creates_empty_file(tmp_path):
    assert load(tmp_path) == []
    assert (tmp_path / "apps.json").read_text() == "[]\n"


def test_load_invalid_json(tmp_path):
    (tmp_path / "apps.json").write_text("not json")
    with pytest.raises(ConfigError, match="invalid JSON"):
        load(tmp_path)


def test_load_invalid_json_with_corrupt_backup(tmp_path):
    (tmp_path / "apps.json").write_text("not json")
    (tmp_path / "apps.json.bak").write_text("also not json")
    with pytest.raises(ConfigError, match="backup also corrupt"):
        load(tmp_path)


def test_load_restores_from_backup(tmp_path, capsys):
    save(tmp_path, [web()])
    save(tmp_path, [web(name="other")])
    (tmp_path / "apps.json").write_text("{broken")

    loaded = load(tmp_path)
    assert [a.name for a in loaded] == ["web"]
    assert "restored from backup" in capsys.readouterr().err
    assert json.loads((tmp_path / "apps.json").read_text())[0]["name"] == "web"


def test_load_skips_invalid_entries(tmp_path, capsys):
    entries = [
        {"name": "good", "dir": ".", "command": "x", "ports": [3000]},
        {"name": "bad", "dir": ".", "command": "x", "ports": [0]},
    ]
    (tmp_path / "apps.json").write_text(json.dumps(entries))
    loaded = load(tmp_path)
    assert [a.name for a in loaded] == ["good"]
    assert 'app "bad" failed validation' in capsys.readouterr().err


def test_load_wrong_type_is_invalid_json(tmp_path):
    (tmp_path / "apps.json").write_text('[{"name": 5}]')
    with pytest.raises(ConfigError, match="invalid JSON"):
        load(tmp_path)


def test_save_writes_backup(tmp_path):
    save(tmp_path, [web()])
    first = (tmp_path / "apps.json").read_text()
    save(tmp_path, [web(name="next")])
    assert (tmp_path / "apps.json.bak").read_text() == first
    assert not (tmp_path / "apps.json.tmp").exists()


def test_save_omits_unset_optional_fields(tmp_path):
    save(tmp_path, [web()])
    data = json.loads((tmp_path / "apps.json").read_text())
    assert data == [{"name": "web", "dir": ".", "command": "npm dev", "ports": [3000]}]


def test_save_with_optional_fields(tmp_path):
    save(tmp_path, [web(auto_restart=True, restart_delay=2000, max_restarts=3)])
    loaded = load(tmp_path)
    assert len(loaded) == 1
    app = loaded[0]
    assert app.auto_restart is True
    assert app.restart_delay == 2000
    assert app.max_restarts == 3


def test_save_load_new_fields(tmp_path):
    apps = [
        App(
            name="api",
            dir="packages/api",
            command="npm run dev",
            ports=[8080],
            env={"NODE_ENV": "development", "DEBUG": "true"},
            depends_on=["db"],
            group="backend",
            health_check=HealthCheckConfig(url="http://localhost:8080/health", interval=5000),
            pinned=True,
            commands={"dev": "npm run dev", "build": "npm run build"},
        ),
        App(name="db", dir="packages/db", command="docker compose up", ports=[5432], group="backend"),
    ]
    save(tmp_path, apps)
    loaded = load(tmp_path)
    assert len(loaded) == 2

    api = loaded[0]
    assert api.env == {"NODE_ENV": "development", "DEBUG": "true"}
    assert api.depends_on == ["db"]
    assert api.group == "backend"
    assert api.health_check == HealthCheckConfig(url="http://localhost:8080/health", interval=5000)
    assert api.pinned is True
    assert api.commands == {"dev": "npm run dev", "build": "npm run build"}

    db = loaded[1]
    assert db.env == {}
    assert db.health_check is None


def test_save_load_watch_config(tmp_path):
    save(
        tmp_path,
        [
            App(
                name="api",
                dir="packages/api",
                command="go run .",
                ports=[8080],
                watch=WatchConfig(paths=["./src"], extensions=[".go"], ignore=["vendor"]),
            )
        ],
    )
    loaded = load(tmp_path)
    assert len(loaded) == 1
    assert loaded[0].watch == WatchConfig(paths=["./src"], extensions=[".go"], ignore=["vendor"])


def test_to_dict_from_dict_round_trip():
    app = web(
        project="p",
        auto_start=True,
        auto_restart=False,
        vault_env="dev",
        notifications=False,
        resource_limits=ResourceLimitsConfig(max_cpu=1.5, max_memory_mb=512),
    )
    data = app.to_dict()
    assert data["autoRestart"] is False
    assert data["resourceLimits"] == {"maxCpu": 1.5, "maxMemoryMB": 512}
    assert App.from_dict(data) == app


def test_duplicate_keys_last_wins():
    raw = '[{"name":"app","dir":".","command":"echo","ports":[1],"dir":"other"}]'
    apps = [App.from_dict(entry) for entry in json.loads(raw)]
    assert len(apps) == 1
    assert apps[0].dir == "other"


def test_has_changed():
    base = web()
    assert has_changed(base, base) is False
    assert has_changed(base, web(dir="./other")) is True
    assert has_changed(base, web(ports=[3001])) is True
    assert has_changed(base, web(command="yarn dev")) is True
    assert has_changed(base, web(ports=[3000, 3001])) is True


def test_has_changed_ignores_name():
    assert has_changed(web(), web(name="renamed")) is False


def test_has_changed_new_fields():
    base = web()
    assert has_changed(base, web(env={"X": "1"})) is True
    assert has_changed(base, web(group="backend")) is True
    assert has_changed(base, web(depends_on=["db"])) is True
    assert has_changed(base, web(commands={"dev": "npm dev"})) is True
    assert (
        has_changed(
            base,
            web(health_check=HealthCheckConfig(url="http://localhost:3000/health", interval=5000)),
        )
        is True
    )


def test_has_changed_watch_config():
    assert has_changed(web(), web(watch=WatchConfig())) is True
    assert has_changed(
        web(watch=WatchConfig(extensions=[".go"])), web(watch=WatchConfig(extensions=[".ts"]))
    ) is True
    assert has_changed(
        web(watch=WatchConfig(extensions=[".go"])), web(watch=WatchConfig(extensions=[".go"]))
    ) is False


def test_validate_dependencies():
    apps = [
        App(name="api", dir=".", command="npm dev", ports=[8080], depends_on=["db"]),
        App(name="db", dir=".", command="docker up", ports=[5432]),
    ]
    assert validate_dependencies(apps) is None

    with pytest.raises(ConfigError, match="unknown app"):
        validate_dependencies(
            [App(name="api", dir=".", command="npm dev", ports=[8080], depends_on=["missing"])]
        )

    with pytest.raises(ConfigError, match="depends on itself"):
        validate_dependencies(
            [App(name="api", dir=".", command="npm dev", ports=[8080], depends_on=["api"])]
        )