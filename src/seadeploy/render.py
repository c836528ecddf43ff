# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/render.py

from __future__ import annotations

from pathlib import Path
from typing import List

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from seadeploy.config.models import ComponentSpec, EnvoyServerSpec, GlobalOptions

TEMPLATES_DIR = Path(__file__).parent / "templates"


class TemplateRenderer:
    def __init__(self, templates_dir: Path | None = None):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir or TEMPLATES_DIR)),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context: dict) -> str:
        tmpl = self.env.get_template(template_name)
        return tmpl.render(**context)

    def systemd_unit(self, comp: ComponentSpec, g: GlobalOptions) -> str:
        return self.render(
            "systemd.service.j2",
            {
                "description": f"SeaweedFS {comp.role} {comp.address}",
                "user": g.service_user,
                "exec_start": comp.exec_start(g),
                "working_dir": comp.data_dir,
                "log_dir": g.log_dir,
                "service_name": comp.service_name,
            },
        )

    def component_config(self, comp: ComponentSpec, g: GlobalOptions, peers: List[str]) -> str:
        if isinstance(comp, EnvoyServerSpec):
            filers = []
            for addr in peers:
                host, _, port = addr.rpartition(":")
                filers.append({"host": host, "port": int(port)})
            return self.render(
                "envoy.yaml.j2",
                {"listen_port": comp.port, "admin_port": comp.admin_port, "filers": filers},
            )
        return self.render("weed.options.j2", {"options": comp.options(g, peers)})
