from pathlib import Path
from unittest.mock import call, patch

import pytest

import cfgdiff
import svcdiff

CINDER_CR = b"""\
spec:
  cinder:
    enabled: true
    template:
      customServiceConfig: |
        [DEFAULT]
        enabled_backends=iscsi
      cinderAPI:
        replicas: 1
        customServiceConfig: |
          [oslo_messaging_notifications]
          driver=noop
      cinderScheduler:
        customServiceConfig: "not an ini snippet"
      cinderVolumes:
        tripleo-iscsi:
          customServiceConfig: |
            [tripleo_iscsi]
            volume_driver=cinder.volume.drivers.lvm.LVMVolumeDriver
"""

GLANCE_CR = b"""\
spec:
  glance:
    template:
      customServiceConfig: |
        [DEFAULT]
        debug=true
        # comment dropped
        [glance_store]
        default_backend=file
"""

PODS = (
    b"glance-external-api-0   3/3   Running   0   1d\n"
    b"glance-internal-api-0   3/3   Running   0   1d\n"
    b"cinder-api-0            0/2   Pending   0   1d\n"
)


def test_clean_ini_sections_merges_and_drops_noise():
    text = (
        "[DEFAULT]\ndebug=true\n\n"
        "[empty]\n# nothing here\nno separator\n"
        "[DEFAULT]\n  verbose = false  \n"
    )
    assert svcdiff.clean_ini_sections(text) == "[DEFAULT]\ndebug=true\nverbose = false\n\n"


def test_extract_cinder_ini():
    ini = svcdiff.extract_service_ini("cinder", CINDER_CR)
    assert ini == (
        "[oslo_messaging_notifications]\ndriver=noop\n\n"
        "[tripleo_iscsi]\nvolume_driver=cinder.volume.drivers.lvm.LVMVolumeDriver\n\n"
        "[DEFAULT]\nenabled_backends=iscsi\n\n"
    )


def test_extract_glance_ini():
    ini = svcdiff.extract_service_ini("glance", GLANCE_CR)
    assert ini == "[DEFAULT]\ndebug=true\n\n[glance_store]\ndefault_backend=file\n\n"


def test_extract_without_custom_config_is_empty():
    assert svcdiff.extract_service_ini("glance", b"spec:\n  glance: {}\n") == ""


def test_extract_unknown_service():
    with pytest.raises(cfgdiff.CfgDiffError, match="Unknown service 'nova'"):
        svcdiff.extract_service_ini("nova", GLANCE_CR)


def test_extract_rejects_non_mapping_cr():
    with pytest.raises(cfgdiff.ParseError):
        svcdiff.extract_service_ini("glance", b"- a\n- b\n")


def test_register_service():
    @svcdiff.register_service("manila", pod_name="manila-api", container_name="manila-api")
    def _manila(cr):
        return [svcdiff._dig(cr, "spec", "manila", "template", "customServiceConfig")]

    try:
        cr = b"spec:\n  manila:\n    template:\n      customServiceConfig: \"[DEFAULT]\\nx=1\\n\"\n"
        assert svcdiff.extract_service_ini("manila", cr) == "[DEFAULT]\nx=1\n\n"
        assert svcdiff.SERVICE_EXTRACTORS["manila"].pod_name == "manila-api"
    finally:
        svcdiff.SERVICE_EXTRACTORS.pop("manila", None)


def test_diff_service_config_with_side_by_side():
    target = b"[DEFAULT]\ndebug=false\n[glance_store]\ndefault_backend=file\n"
    reports = svcdiff.diff_service_config(
        "glance", GLANCE_CR, target, "glance.patch.yaml", "glance-api.conf", side_by_side=True
    )
    assert len(reports) == 2
    assert [e.text for e in reports[0].entries] == ["[DEFAULT]\n-debug=true\n+debug=false\n"]
    assert reports[0].header == "difference between glance.patch.yaml and glance-api.conf\n"
    assert [e.text for e in reports[1].entries] == ["[DEFAULT]\n-debug=false\n+debug=true\n"]


def test_diff_service_config_extra_deployed_section():
    target = b"[DEFAULT]\ndebug=true\n[glance_store]\ndefault_backend=file\n[oslo]\na=1\n"
    (report,) = svcdiff.diff_service_config("glance", GLANCE_CR, target, "cr", "conf")
    assert [e.text for e in report.entries] == ["+[oslo]\n", "+a=1\n"]


@patch("cfgdiff.run_command")
def test_get_pod_full_name(mock_run):
    mock_run.return_value = PODS
    assert svcdiff.get_pod_full_name("glance-external-api") == "glance-external-api-0"
    mock_run.assert_called_with(["oc", "get", "pod", "--no-headers"])


@patch("cfgdiff.run_command")
def test_get_pod_full_name_requires_running_pod(mock_run):
    mock_run.return_value = PODS
    with pytest.raises(cfgdiff.FetchError, match="cinder-api"):
        svcdiff.get_pod_full_name("cinder-api")
    with pytest.raises(cfgdiff.FetchError):
        svcdiff.get_pod_full_name("glance-external-api", strict=True)


@patch("svcdiff.oc_available", return_value=True)
@patch("cfgdiff.run_command")
def test_get_config_from_pod(mock_run, _oc):
    mock_run.side_effect = [PODS, b"[DEFAULT]\n"]
    out = svcdiff.get_config_from_pod(
        "/etc/glance/glance.conf.d/00-config.conf", "glance-external-api", "glance-api"
    )
    assert out == b"[DEFAULT]\n"
    assert mock_run.call_args_list[1] == call(
        [
            "oc",
            "exec",
            "glance-external-api-0",
            "-c",
            "glance-api",
            "--",
            "cat",
            "/etc/glance/glance.conf.d/00-config.conf",
        ]
    )


@patch("svcdiff.oc_available", return_value=False)
def test_get_config_from_pod_without_oc(_oc):
    with pytest.raises(cfgdiff.FetchError, match="OC is not connected"):
        svcdiff.get_config_from_pod("/etc/x.conf", "pod", "ctr")


@patch("cfgdiff.run_command")
def test_get_config_from_podman(mock_run):
    mock_run.return_value = b"conf"
    assert svcdiff.get_config_from_podman("/etc/glance/glance-api.conf", "glance_api") == b"conf"
    mock_run.assert_called_once_with(
        [
            "ssh",
            "-F",
            "ssh.config",
            "standalone",
            "podman",
            "exec",
            "glance_api",
            "cat",
            "/etc/glance/glance-api.conf",
        ]
    )


@patch("svcdiff.oc_available", return_value=True)
@patch("cfgdiff.run_command")
def test_get_configmap(mock_run, _oc):
    mock_run.return_value = b"data: {}\n"
    assert svcdiff.get_configmap("nova-config") == b"data: {}\n"
    mock_run.assert_called_once_with(["oc", "get", "configmap/nova-config", "-o", "yaml"])


@patch("shutil.which", return_value=None)
def test_oc_available_without_binary(_which):
    assert svcdiff.oc_available() is False


def test_diff_configmap(tmp_path: Path):
    cm = b"""\
apiVersion: v1
kind: ConfigMap
metadata:
  name: nova-config
data:
  nova.conf: |
    [DEFAULT]
    debug=true
  same.conf: |
    [a]
    b=1
"""
    (tmp_path / "nova.conf").write_text("[DEFAULT]\ndebug=false\n", encoding="utf-8")
    (tmp_path / "same.conf").write_text("[a]\nb=1\n", encoding="utf-8")

    reports = svcdiff.diff_configmap(cm, str(tmp_path), "nova-config")
    assert [r.left for r in reports] == ["nova-config:nova.conf", "nova-config:same.conf"]
    assert [e.text for e in reports[0].entries] == ["[DEFAULT]\n-debug=true\n+debug=false\n"]
    assert not reports[1].has_differences


def test_diff_configmap_without_data():
    with pytest.raises(cfgdiff.ParseError, match="has no data"):
        svcdiff.diff_configmap(b"kind: ConfigMap\n", "/tmp", "empty")


def test_load_kv_text_formats():
    assert svcdiff.load_kv_text('{ovn-bridge=br-int,ovn-encap-type="geneve"}') == {
        "ovn-bridge": "br-int",
        "ovn-encap-type": "geneve",
    }
    text = "a=1\nb: 2\n# c=3\nno separator\nurl=http://x:80\n"
    assert svcdiff.load_kv_text(text) == {"a": "1", "b": "2", "url": "http://x:80"}


def test_load_service_config(tmp_path: Path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        """\
services:
  keystone:
    enable: true
    podman_name: keystone
    pod_name: keystone
    container_name: keystone-api
    path: /etc/keystone/keystone.conf
  ovs_external_ids:
    hosts:
      - standalone
    service_command: "ovs-vsctl list Open_vSwitch . | grep external_ids"
    cat_output: true
    config_mapping:
      ovn-bridge: edpm_ovn_bridge
      ovn-encap-type: edpm_ovn_encap_type
""",
        encoding="utf-8",
    )
    services = svcdiff.load_service_config(str(cfg))
    assert list(services) == ["keystone", "ovs_external_ids"]
    keystone = services["keystone"]
    assert keystone.enable is True
    assert keystone.path == ["/etc/keystone/keystone.conf"]
    assert keystone.container_name == "keystone-api"
    ovs = services["ovs_external_ids"]
    assert ovs.hosts == ["standalone"]
    assert ovs.cat_output is True
    assert ovs.config_mapping["ovn-bridge"] == "edpm_ovn_bridge"
    assert ovs.path == []


def test_load_service_config_errors(tmp_path: Path):
    with pytest.raises(cfgdiff.FetchError):
        svcdiff.load_service_config(str(tmp_path / "missing.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("services: [a, b]\n", encoding="utf-8")
    with pytest.raises(cfgdiff.ParseError):
        svcdiff.load_service_config(str(bad))


def test_diff_mapped_keys():
    tree = {
        "spec": {
            "nodeTemplate": {
                "ansible": {
                    "ansibleVars": {
                        "edpm_ovn_bridge": "br-int",
                        "edpm_ovn_encap_type": "geneve",
                        "service_net_map": {"nova_api_network": "internal_api"},
                    }
                }
            }
        }
    }
    flat = {"ovn-bridge": "br-int", "ovn-encap-type": "vxlan", "ignored": "x"}
    mapping = {
        "ovn-bridge": "edpm_ovn_bridge",
        "ovn-encap-type": "edpm_ovn_encap_type",
        "nova-net": "service_net_map.nova_api_network",
    }
    report = svcdiff.diff_mapped_keys(flat, tree, mapping, left_label="ovs", right_label="edpm")
    assert [e.text for e in report.entries] == [
        "-ovn-encap-type=vxlan\n+edpm_ovn_encap_type=geneve\n",
        "-nova-net=\n+service_net_map.nova_api_network=internal_api\n",
    ]
    assert report.header == "difference between ovs and edpm\n"
