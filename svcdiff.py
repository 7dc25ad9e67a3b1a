#!/usr/bin/env python3
"""
svcdiff - Compare deployed service configuration with orchestrator resources.

This module provides functionality to:
- Extract the INI snippets of a service custom resource (customServiceConfig)
- Compare them with a service config file read locally, from an OpenShift pod
  (oc exec) or from a podman container reached over SSH
- Compare the data entries of a config map with the files of a config directory
- Compare a flat key=value extraction with nested values of a custom resource
  through the config_mapping of a service inventory (config.yaml)

Services are looked up in a registry; new ones are added with
@register_service.

Exit codes:
    - 0: No differences
    - 1: Differences found
    - 2: Operational error
"""

import argparse
import os
import shutil
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import cfgdiff
from cfgdiff import (
    CHANGED,
    CfgDiffError,
    CompareContext,
    ComparisonReport,
    DiffEntry,
    FetchError,
    ParseError,
)

logger = cfgdiff.logger.getChild("svcdiff")

DEFAULT_MAPPED_ROOT = "spec.nodeTemplate.ansible.ansibleVars"


# --- Service inventory ---


@dataclass
class ServiceConfig:
    """One entry of the services: mapping in config.yaml."""

    name: str
    enable: bool = False
    podman_id: str = ""
    podman_image: str = ""
    podman_name: str = ""
    pod_name: str = ""
    container_name: str = ""
    strict_pod_name_match: bool = False
    path: List[str] = field(default_factory=list)
    hosts: List[str] = field(default_factory=list)
    service_command: str = ""
    cat_output: bool = False
    config_mapping: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "ServiceConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "name"}
        unknown = sorted(set(data) - set(known))
        if unknown:
            logger.warning("Ignoring unknown keys for service %s: %s", name, ", ".join(unknown))
        for key in ("path", "hosts"):
            if isinstance(known.get(key), str):
                known[key] = [known[key]]
            elif known.get(key) is None:
                known.pop(key, None)
        if known.get("config_mapping") is None:
            known.pop("config_mapping", None)
        else:
            known["config_mapping"] = {
                str(k): str(v) for k, v in known["config_mapping"].items()
            }
        return cls(name=name, **known)


def load_service_config(path: str) -> Dict[str, ServiceConfig]:
    """
    Load the service inventory YAML.

    Args:
        path: YAML file with a top-level "services" mapping

    Returns:
        Dict of service name to ServiceConfig, in file order

    Raises:
        FetchError: If the file cannot be read
        ParseError: If the YAML is invalid or "services" is not a mapping

    Example YAML:
        services:
          keystone:
            enable: true
            podman_name: keystone
            pod_name: keystone
            container_name: keystone-api
            path:
              - /etc/keystone/keystone.conf
    """
    import yaml

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise FetchError(f"Failed to open file: '{path}'. {e}") from e
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML in {path}: {e}") from e

    services = data.get("services") if isinstance(data, dict) else None
    if services is None:
        return {}
    if not isinstance(services, dict):
        raise ParseError(f"'services' must be a mapping in {path}")
    for name, entry in services.items():
        if entry is not None and not isinstance(entry, dict):
            raise ParseError(f"Service '{name}' must be a mapping in {path}")
    return {
        str(name): ServiceConfig.from_dict(str(name), entry or {})
        for name, entry in services.items()
    }


def load_kv_text(text: str) -> Dict[str, str]:
    """
    Parse a flat key/value extraction.

    Accepts one pair per line as "key=value" or "key: value", or a single
    "{k1=v1,k2="v2"}" blob. Values are stripped of surrounding quotes.
    Lines without a separator and "#" comments are skipped.
    """
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        items = stripped[1:-1].split(",")
    else:
        items = stripped.splitlines()

    result: Dict[str, str] = {}
    for item in items:
        if item.strip().startswith("#"):
            continue
        parts = item.split("=", 1)
        if len(parts) != 2:
            parts = item.split(":", 1)
        if len(parts) == 2:
            result[parts[0].strip()] = parts[1].strip().strip('"')
    return result


# --- Custom resource extraction ---


def _dig(data: Any, *keys: str) -> Any:
    """Follow nested mapping keys, returning None as soon as one is missing."""
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _ini_snippet(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.startswith("["):
        return value
    return None


def clean_ini_sections(text: str) -> str:
    """
    Regroup key=value lines under their section headers.

    Sections repeated across snippets are merged in first-seen order. Blank
    lines, comments and lines without "=" are dropped, as are sections left
    without any line.

    Example:
        >>> clean_ini_sections("[DEFAULT]\\ndebug=true\\n[DEFAULT]\\nverbose=false\\n")
        '[DEFAULT]\\ndebug=true\\nverbose=false\\n\\n'
    """
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        if line.startswith("[") and line.endswith("]"):
            current = line[1:-1].strip()
            sections.setdefault(current, [])
        elif current is not None and "=" in line:
            sections[current].append(line)

    out = []
    for name, lines in sections.items():
        if lines:
            out.append(f"[{name}]\n" + "".join(f"{line}\n" for line in lines) + "\n")
    return "".join(out)


ServiceExtractor = Callable[[Dict[str, Any]], List[str]]


@dataclass
class ServiceSpec:
    name: str
    extractor: ServiceExtractor
    pod_name: str = ""
    container_name: str = ""


SERVICE_EXTRACTORS: Dict[str, ServiceSpec] = {}


def register_service(name: str, pod_name: str = "", container_name: str = ""):
    """
    Register the snippet extractor of a service custom resource.

    The decorated function receives the parsed CR and returns the raw
    customServiceConfig values to merge, in order.

    Example:
        >>> @register_service("manila", pod_name="manila-api")
        ... def _manila(cr):
        ...     return [_dig(cr, "spec", "manila", "template", "customServiceConfig")]
    """

    def decorator(func: ServiceExtractor) -> ServiceExtractor:
        SERVICE_EXTRACTORS[name] = ServiceSpec(name, func, pod_name, container_name)
        return func

    return decorator


@register_service("cinder", pod_name="cinder-api", container_name="cinder-api")
def _cinder_snippets(cr: Dict[str, Any]) -> List[str]:
    template = _dig(cr, "spec", "cinder", "template") or {}
    snippets = [
        _dig(template, "cinderAPI", "customServiceConfig"),
        _dig(template, "cinderScheduler", "customServiceConfig"),
    ]
    volumes = _dig(template, "cinderVolumes") or {}
    if isinstance(volumes, dict):
        for backend in volumes.values():
            snippets.append(_dig(backend, "customServiceConfig"))
    snippets.append(_dig(template, "customServiceConfig"))
    return snippets


@register_service("glance", pod_name="glance-external-api", container_name="glance-api")
def _glance_snippets(cr: Dict[str, Any]) -> List[str]:
    return [_dig(cr, "spec", "glance", "template", "customServiceConfig")]


def extract_service_ini(service: str, cr_data: bytes, label: str = "<cr>") -> str:
    """
    Build the INI text a service custom resource configures.

    Args:
        service: Registered service name
        cr_data: Raw YAML of the custom resource (config patch)
        label: Name used in error messages

    Returns:
        Cleaned INI text (see clean_ini_sections); empty when the CR carries
        no customServiceConfig

    Raises:
        CfgDiffError: If the service is not registered
        ParseError: If the CR is not a YAML mapping
    """
    spec = SERVICE_EXTRACTORS.get(service)
    if spec is None:
        known = ", ".join(sorted(SERVICE_EXTRACTORS))
        raise CfgDiffError(f"Unknown service '{service}' (known: {known})")
    cr = cfgdiff.parse_yaml(cr_data, label)
    if not isinstance(cr, dict):
        raise ParseError(f"{label} is not a YAML mapping")
    snippets = [s for s in (_ini_snippet(v) for v in spec.extractor(cr)) if s]
    logger.info("Found %d config snippet(s) for %s in %s", len(snippets), service, label)
    return clean_ini_sections("\n".join(snippets))


# --- Target sources ---


def oc_available() -> bool:
    """Check that the oc client exists and is logged in."""
    if shutil.which("oc") is None:
        return False
    try:
        cfgdiff.run_command(["oc", "whoami"])
    except FetchError:
        return False
    return True


def _require_oc() -> None:
    if not oc_available():
        raise FetchError("OC is not connected, you need to logged in before.")


def get_pod_full_name(pod_name: str, strict: bool = False) -> str:
    """
    Resolve the name of a running pod from a name prefix.

    Args:
        pod_name: Pod name or prefix, e.g. "glance-external-api"
        strict: Require an exact name match

    Returns:
        Full name of the first running pod that matches

    Raises:
        FetchError: If oc fails or no running pod matches
    """
    out = cfgdiff.run_command(["oc", "get", "pod", "--no-headers"]).decode("utf-8", "replace")
    for line in out.splitlines():
        fields = line.split()
        if len(fields) < 3 or fields[2].lower() != "running":
            continue
        name = fields[0]
        if name == pod_name or (not strict and name.startswith(pod_name)):
            return name
    raise FetchError(f"No running pod found matching '{pod_name}'")


def get_config_from_pod(path: str, pod_name: str, container_name: str, strict: bool = False) -> bytes:
    """Read a file from a running pod container with oc exec."""
    _require_oc()
    full_name = get_pod_full_name(pod_name, strict)
    return cfgdiff.run_fetch_command(f"oc exec {full_name} -c {container_name} --", path)


def get_config_from_podman(
    path: str, podman_name: str, ssh_cmd: str = "ssh -F ssh.config standalone"
) -> bytes:
    """Read a file from a podman container on a host reached with ssh_cmd."""
    return cfgdiff.run_fetch_command(f"{ssh_cmd} podman exec {podman_name}", path)


def get_configmap(name: str) -> bytes:
    """Return the YAML of an OpenShift config map (oc get configmap/<name> -o yaml)."""
    _require_oc()
    return cfgdiff.run_command(["oc", "get", f"configmap/{name}", "-o", "yaml"])


# --- Diffs ---


def diff_service_config(
    service: str,
    cr_data: bytes,
    target_data: bytes,
    cr_label: str,
    target_label: str,
    ctx: Optional[CompareContext] = None,
    side_by_side: bool = False,
) -> List[ComparisonReport]:
    """
    Compare the INI a custom resource configures with a deployed config file.

    Args:
        service: Registered service name
        cr_data: Raw YAML of the custom resource
        target_data: Raw INI of the deployed service config
        cr_label: Name of the CR in reports
        target_label: Name of the service config in reports
        ctx: Optional request context (verbosity)
        side_by_side: Also compare in the reverse direction

    Returns:
        One report, or two when side_by_side is set (forward first)
    """
    ctx = ctx or CompareContext()
    ini = extract_service_ini(service, cr_data, cr_label).encode("utf-8")
    reports = [cfgdiff.compare_ini(ini, target_data, cr_label, target_label, ctx)]
    if side_by_side:
        reports.append(cfgdiff.compare_ini(target_data, ini, target_label, cr_label, ctx))
    return reports


def diff_configmap(
    configmap_data: bytes,
    config_dir: str,
    label: str,
    remote_cmd: Optional[str] = None,
    ctx: Optional[CompareContext] = None,
) -> List[ComparisonReport]:
    """
    Compare each data entry of a config map with the same-named config file.

    Args:
        configmap_data: Config map YAML (as printed by oc get -o yaml)
        config_dir: Directory holding the deployed files
        label: Config map name used in reports
        remote_cmd: Optional command prefix to read config_dir remotely
        ctx: Optional request context (verbosity)

    Returns:
        One report per data entry, in config map order

    Raises:
        ParseError: If the config map has no data mapping
        FetchError: If a deployed file cannot be read
    """
    ctx = ctx or CompareContext()
    cm = cfgdiff.parse_yaml(configmap_data, label)
    data = _dig(cm, "data")
    if not isinstance(data, dict):
        raise ParseError(f"Config map {label} has no data")

    reports = []
    for key, value in data.items():
        target = os.path.join(config_dir, str(key))
        content = b"" if value is None else str(value).encode("utf-8")
        logger.info("Comparing %s:%s with %s", label, key, target)
        deployed = cfgdiff.read_source(target, remote_cmd)
        reports.append(cfgdiff.compare_bytes(content, deployed, f"{label}:{key}", target, ctx))
    return reports


def diff_mapped_keys(
    flat: Dict[str, str],
    tree: Any,
    mapping: Dict[str, str],
    root: str = DEFAULT_MAPPED_ROOT,
    left_label: str = "<flat>",
    right_label: str = "<tree>",
) -> ComparisonReport:
    """
    Compare a flat extraction with nested values through a key mapping.

    Args:
        flat: Flat key to value extraction (see load_kv_text)
        tree: Parsed YAML document
        mapping: Flat key to dotted path below root
        root: Dotted path of the subtree holding the mapped values
        left_label: Name of the flat source in the report header
        right_label: Name of the tree source in the report header

    Returns:
        ComparisonReport with one CHANGED entry per mismatching key, rendered
        as "-key=flat" followed by "+mapped=tree". Missing values compare as
        empty strings.
    """
    node = _dig(tree, *root.split(".")) if root else tree
    report = ComparisonReport(left_label, right_label)
    for key, mapped in mapping.items():
        value = _dig(node, *mapped.split("."))
        expected = "" if value is None else cfgdiff.render_value(value)
        actual = flat.get(key, "")
        if actual != expected:
            text = f"-{key}={actual}\n+{mapped}={expected}\n"
            report.append_unique(DiffEntry(CHANGED, key, actual, expected, text))
    return report.finalize()


# --- CLI ---


def _print_reports(reports: List[ComparisonReport], color: bool, quiet: bool) -> bool:
    found = False
    for report in reports:
        if report.has_differences:
            found = True
            if not quiet:
                cfgdiff.print_report(report, color)
        elif not quiet:
            print(f"No differences between {report.left} and {report.right}")
    return found


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for svcdiff CLI tool.

    Modes:
        --service: Compare a service CR config patch with a deployed config file
        --configmap: Compare a config map with a config directory
        --mapped: Compare a flat extraction with a CR through config_mapping

    Exit codes:
        - 0: No differences
        - 1: Differences found
        - 2: Operational error
    """
    ap = argparse.ArgumentParser(
        description="Compare service configuration with orchestrator resources.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog=(
            "Examples:\n"
            "  svcdiff --service glance --config-patch glance_patch.yaml \\\n"
            "      --config-file /etc/glance/glance-api.conf --from-podman --podman-name glance_api\n"
            "  svcdiff --configmap nova-config --config-dir /var/lib/config-data/nova\n"
            "  svcdiff --mapped ovs_external_ids --service-config config.yaml \\\n"
            "      --flat-file ovs_external_ids.txt --spec-file edpm.yaml"
        ),
    )
    mode = ap.add_mutually_exclusive_group(required=True)
    mode.add_argument("--service", help="Registered service name (cinder, glance, ...).")
    mode.add_argument("--configmap", help="Config map name, or a local YAML dump of one.")
    mode.add_argument("--mapped", help="Service whose config_mapping drives the comparison.")

    ap.add_argument("--config-patch", help="Service custom resource YAML.")
    ap.add_argument("--config-file", help="Deployed service config path.")
    src = ap.add_mutually_exclusive_group()
    src.add_argument("--from-pod", action="store_true", help="Read --config-file from a pod.")
    src.add_argument(
        "--from-podman", action="store_true", help="Read --config-file from a podman container."
    )
    ap.add_argument("--pod-name", help="Pod name prefix (defaults to the service's).")
    ap.add_argument("--container", help="Pod container name (defaults to the service's).")
    ap.add_argument("--strict-pod-name", action="store_true")
    ap.add_argument("--podman-name", help="Podman container name or id.")
    ap.add_argument(
        "--ssh-cmd", default="ssh -F ssh.config standalone", help="SSH command for podman."
    )
    ap.add_argument("--side-by-side", action="store_true", help="Also compare in reverse.")

    ap.add_argument("--config-dir", help="Directory compared with the config map data.")
    ap.add_argument("--remote-cmd", help="Command prefix to read --config-dir remotely.")

    ap.add_argument("--service-config", default="config.yaml", help="Service inventory YAML.")
    ap.add_argument("--flat-file", help="Flat key=value extraction.")
    ap.add_argument("--spec-file", help="Custom resource YAML holding mapped values.")
    ap.add_argument("--root", default=DEFAULT_MAPPED_ROOT, help="Dotted root of mapped values.")

    ap.add_argument("--quiet", action="store_true")
    ap.add_argument("--verbose", action="store_true")
    ap.add_argument("--log-file")
    ap.add_argument("--no-color", action="store_true")
    args = ap.parse_args(argv)

    if args.service and not (args.config_patch and args.config_file):
        ap.error("--service requires --config-patch and --config-file")
    if args.from_podman and not args.podman_name:
        ap.error("--from-podman requires --podman-name")
    if args.configmap and not args.config_dir:
        ap.error("--configmap requires --config-dir")
    if args.mapped and not (args.flat_file and args.spec_file):
        ap.error("--mapped requires --flat-file and --spec-file")

    cfgdiff.setup_logging(args.verbose, args.log_file)
    ctx = CompareContext(verbose=args.verbose)
    color = not args.no_color and sys.stdout.isatty()

    try:
        if args.service:
            cr_data = cfgdiff.read_source(args.config_patch)
            if args.from_pod:
                spec = SERVICE_EXTRACTORS.get(args.service)
                pod = args.pod_name or (spec.pod_name if spec else "")
                container = args.container or (spec.container_name if spec else "")
                if not pod or not container:
                    raise CfgDiffError("--from-pod requires --pod-name and --container")
                target = get_config_from_pod(args.config_file, pod, container, args.strict_pod_name)
            elif args.from_podman:
                target = get_config_from_podman(args.config_file, args.podman_name, args.ssh_cmd)
            else:
                target = cfgdiff.read_source(args.config_file)
            reports = diff_service_config(
                args.service,
                cr_data,
                target,
                args.config_patch,
                args.config_file,
                ctx,
                args.side_by_side,
            )
        elif args.configmap:
            if os.path.isfile(args.configmap):
                cm_data = cfgdiff.read_source(args.configmap)
            else:
                cm_data = get_configmap(args.configmap)
            reports = diff_configmap(cm_data, args.config_dir, args.configmap, args.remote_cmd, ctx)
        else:
            services = load_service_config(args.service_config)
            service = services.get(args.mapped)
            if service is None:
                raise CfgDiffError(f"Service '{args.mapped}' not found in {args.service_config}")
            flat = load_kv_text(cfgdiff.read_source(args.flat_file).decode("utf-8", "replace"))
            tree = cfgdiff.parse_yaml(cfgdiff.read_source(args.spec_file), args.spec_file)
            reports = [
                diff_mapped_keys(
                    flat, tree, service.config_mapping, args.root, args.flat_file, args.spec_file
                )
            ]
    except CfgDiffError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    sys.exit(1 if _print_reports(reports, color, args.quiet) else 0)


if __name__ == "__main__":
    main()
