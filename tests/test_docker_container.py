import io
import os
import shutil
import struct
import tarfile
from unittest import mock

import pytest

from buildxkit.docker_container import (
    DockerContainerDriver,
    DockerContainerFactory,
    parse_buildkitd_version,
    write_config_files,
)
from buildxkit.driver import DEFAULT_IMAGE, Feature, Status
from buildxkit.manager import InitConfig

NAME = "buildx_buildkit_node0"


def _frame(stream, data):
    return struct.pack(">BxxxL", stream, len(data)) + data


class FakeDockerAPI:
    def __init__(
        self,
        *,
        container=None,
        info=None,
        pull_error=None,
        local_image=True,
        exec_handler=None,
        logs=b"",
    ):
        self.container = container
        self.info_data = info if info is not None else {}
        self.pull_error = pull_error
        self.local_image = local_image
        self.exec_handler = exec_handler or (lambda cmd: (_frame(1, b"ok"), 0))
        self.logs = logs
        self.calls = []
        self._execs = {}

    def container_inspect(self, name):
        if self.container is None:
            raise LookupError(name)
        return self.container

    def image_create(self, image, auth):
        self.calls.append(("image_create", image))
        if self.pull_error is not None:
            raise self.pull_error

    def image_inspect(self, image):
        if not self.local_image:
            raise LookupError(image)
        return {}

    def info(self):
        return self.info_data

    def container_create(self, name, config, host_config):
        self.calls.append(("container_create", name, config, host_config))
        self.container = {
            "State": {"Running": False},
            "Mounts": [{"Name": name + "_state"}],
        }

    def copy_to_container(self, name, path, archive):
        self.calls.append(("copy", name, path, archive))

    def container_start(self, name):
        self.calls.append(("start", name))
        self.container["State"]["Running"] = True

    def container_stop(self, name):
        self.calls.append(("stop", name))

    def container_remove(self, name, remove_volumes, force):
        self.calls.append(("remove", name, remove_volumes, force))

    def volume_remove(self, name, force):
        self.calls.append(("volume_remove", name))

    def container_logs(self, name):
        return io.BytesIO(self.logs)

    def exec_create(self, name, cmd):
        exec_id = f"exec{len(self._execs)}"
        self._execs[exec_id] = self.exec_handler(cmd)
        return exec_id

    def exec_attach(self, exec_id):
        return io.BytesIO(self._execs[exec_id][0])

    def exec_inspect(self, exec_id):
        return {"ExitCode": self._execs[exec_id][1]}


def _driver(api, **opts):
    cfg = InitConfig(name=NAME, docker_api=api, driver_opts=opts)
    return DockerContainerFactory().new(cfg)


def _call_names(api):
    return [call[0] for call in api.calls]


def test_factory_requires_docker_api():
    with pytest.raises(ValueError, match="requires docker API access"):
        DockerContainerFactory().new(InitConfig(name=NAME))


def test_factory_parses_options():
    driver = _driver(
        FakeDockerAPI(),
        network="host",
        image="custom:tag",
        **{"cgroup-parent": "/mygroup", "env.FOO": "bar"},
    )
    assert driver.net_mode == "host"
    assert driver.image_name() == "custom:tag"
    assert driver.cgroup_parent == "/mygroup"
    assert driver.env == ["FOO=bar"]
    assert driver.config().buildkit_flags == [
        "--allow-insecure-entitlement=network.host"
    ]


def test_factory_does_not_mutate_given_flags():
    flags = ["--debug"]
    cfg = InitConfig(
        name=NAME,
        docker_api=FakeDockerAPI(),
        buildkit_flags=flags,
        driver_opts={"network": "host"},
    )
    driver = DockerContainerFactory().new(cfg)
    assert flags == ["--debug"]
    assert driver.config().buildkit_flags[0] == "--debug"


@pytest.mark.parametrize("opts", [{"env.": "x"}, {"unknown": "x"}])
def test_factory_rejects_bad_options(opts):
    with pytest.raises(ValueError):
        _driver(FakeDockerAPI(), **opts)


def test_default_image_and_priority():
    factory = DockerContainerFactory()
    driver = _driver(FakeDockerAPI())
    assert driver.image_name() == DEFAULT_IMAGE
    assert factory.priority("", None) > factory.priority("", object())
    assert factory.allows_instances() is True
    assert factory.name() == "docker-container"
    assert driver.is_moby_driver() is False


def test_features_all_enabled():
    features = _driver(FakeDockerAPI()).features()
    assert set(features) == set(Feature)
    assert all(features.values())


def test_parse_buildkitd_version():
    assert parse_buildkitd_version("buildkitd example/buildkit v0.11.0 deadbeef\n") == "v0.11.0"
    with pytest.raises(ValueError, match="unexpected version format"):
        parse_buildkitd_version("buildkitd v0.11.0")


def test_write_config_files_places_files_under_config_dir():
    root = write_config_files({"buildkitd.toml": b"debug = true", "certs/ca.pem": b"ca"})
    try:
        with open(os.path.join(root, "etc", "buildkit", "buildkitd.toml"), "rb") as f:
            assert f.read() == b"debug = true"
        with open(os.path.join(root, "etc", "buildkit", "certs", "ca.pem"), "rb") as f:
            assert f.read() == b"ca"
    finally:
        shutil.rmtree(root)


def test_info_reports_status():
    assert _driver(FakeDockerAPI()).info().status == Status.INACTIVE
    running = FakeDockerAPI(container={"State": {"Running": True}})
    assert _driver(running).info().status == Status.RUNNING
    stopped = FakeDockerAPI(container={"State": {"Running": False}})
    assert _driver(stopped).info().status == Status.STOPPED


def test_version_reads_stdout_frames():
    api = FakeDockerAPI(
        exec_handler=lambda cmd: (
            _frame(2, b"noise") + _frame(1, b"buildkitd example/buildkit v0.11.0 deadbeef"),
            0,
        )
    )
    assert _driver(api).version() == "v0.11.0"


def test_version_failure_includes_stderr():
    api = FakeDockerAPI(exec_handler=lambda cmd: (_frame(2, b"boom"), 1))
    with pytest.raises(RuntimeError, match="boom"):
        _driver(api).version()


def test_system_error_frame_raises():
    api = FakeDockerAPI(exec_handler=lambda cmd: (_frame(3, b"daemon died"), 0))
    with pytest.raises(RuntimeError, match="daemon died"):
        _driver(api).version()


def test_bootstrap_creates_container():
    api = FakeDockerAPI(
        info={"CgroupDriver": "cgroupfs", "SecurityOptions": ["name=userns"]}
    )
    cfg = InitConfig(
        name=NAME,
        docker_api=api,
        buildkit_flags=["--debug"],
        files={"buildkitd.toml": b"debug = true"},
    )
    driver = DockerContainerFactory().new(cfg)
    messages = []
    driver.bootstrap(messages.append)

    assert _call_names(api) == ["image_create", "container_create", "copy", "start"]
    _, name, config, host_config = api.calls[1]
    assert name == NAME
    assert config["Image"] == DEFAULT_IMAGE
    assert config["Cmd"] == ["--debug"]
    assert host_config["Privileged"] is True
    assert host_config["Mounts"][0]["Source"] == NAME + "_state"
    assert host_config["CgroupParent"] == "/docker/buildx"
    assert host_config["UsernsMode"] == "host"
    assert "[internal] booting buildkit" in messages

    archive = api.calls[2][3]
    with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
        member = tar.getmember("etc/buildkit/buildkitd.toml")
        assert member.uid == 0 and member.gid == 0
        assert tar.extractfile(member).read() == b"debug = true"
    assert driver.info().status == Status.RUNNING


def test_bootstrap_starts_existing_container():
    api = FakeDockerAPI(container={"State": {"Running": False}})
    _driver(api).bootstrap(None)
    assert _call_names(api) == ["start"]


def test_pull_failure_without_local_image_raises():
    api = FakeDockerAPI(pull_error=ConnectionError("offline"), local_image=False)
    with pytest.raises(ConnectionError):
        _driver(api).bootstrap(None)
    assert "container_create" not in _call_names(api)


def test_pull_failure_uses_local_image():
    api = FakeDockerAPI(pull_error=ConnectionError("offline"), local_image=True)
    messages = []
    _driver(api).bootstrap(messages.append)
    assert "container_create" in _call_names(api)
    assert any("using local image" in m for m in messages)


def test_wait_retries_until_ready():
    results = iter([1, 1, 0])
    api = FakeDockerAPI(exec_handler=lambda cmd: (b"", next(results)))
    with mock.patch("time.sleep") as sleep:
        _driver(api).bootstrap(None)
    assert sleep.call_count == 2
    assert _call_names(api)[-1] == "start"


def test_wait_gives_up_and_copies_logs():
    api = FakeDockerAPI(
        exec_handler=lambda cmd: (b"", 1), logs=_frame(1, b"daemon log")
    )
    messages = []
    with mock.patch("time.sleep"):
        with pytest.raises(RuntimeError, match="exit code 1"):
            _driver(api).bootstrap(messages.append)
    assert "daemon log" in messages


def test_stop_only_when_running():
    stopped = FakeDockerAPI(container={"State": {"Running": False}})
    _driver(stopped).stop(False)
    assert _call_names(stopped) == []
    running = FakeDockerAPI(container={"State": {"Running": True}})
    _driver(running).stop(False)
    assert _call_names(running) == ["stop"]


def test_rm_removes_container_and_volume():
    api = FakeDockerAPI(
        container={"State": {"Running": True}, "Mounts": [{"Name": NAME + "_state"}]}
    )
    _driver(api).rm(True, True, True)
    assert api.calls == [("remove", NAME, True, True), ("volume_remove", NAME + "_state")]


def test_rm_keeps_volume_and_daemon_when_asked():
    api = FakeDockerAPI(
        container={"State": {"Running": True}, "Mounts": [{"Name": NAME + "_state"}]}
    )
    _driver(api).rm(False, False, True)
    assert _call_names(api) == ["remove"]
    keep = FakeDockerAPI(container={"State": {"Running": True}, "Mounts": []})
    _driver(keep).rm(False, True, False)
    assert keep.calls == []


def test_client_demultiplexes_stdout():
    api = FakeDockerAPI(
        exec_handler=lambda cmd: (_frame(1, b"hello ") + _frame(2, b"err") + _frame(1, b"world"), 0)
    )
    conn = _driver(api).client()
    data = b""
    while True:
        chunk = conn.read(4)
        if not chunk:
            break
        data += chunk
    assert data == b"hello world"