from seadeploy.config.models import EnvoyServerSpec, FilerServerSpec, GlobalOptions
from seadeploy.render import TemplateRenderer

G = GlobalOptions()


def test_systemd_unit_for_filer():
    f = FilerServerSpec(host="10.0.0.4", data_dir="/opt/seaweed/filer-8888")
    unit = TemplateRenderer().systemd_unit(f, G)
    assert "Description=SeaweedFS filer 10.0.0.4:8888" in unit
    assert "WorkingDirectory=/opt/seaweed/filer-8888" in unit
    assert "ExecStart=/usr/local/bin/weed filer -options=/etc/seaweed/filer-8888.options" in unit
    assert "StandardOutput=append:/var/log/seaweedfs/seaweed-filer-8888.log" in unit
    assert "Restart=always" in unit
    assert unit.endswith("WantedBy=multi-user.target\n")


def test_options_file_is_key_value_lines():
    f = FilerServerSpec(host="10.0.0.4", data_dir="/d", s3=True)
    text = TemplateRenderer().component_config(f, G, ["10.0.0.1:9333"])
    lines = text.splitlines()
    assert "master=10.0.0.1:9333" in lines
    assert "s3=true" in lines
    assert "defaultStoreDir=/d" in lines
    assert all("=" in l for l in lines)


def test_envoy_config_lists_every_filer():
    e = EnvoyServerSpec(host="10.0.0.9", version="1.30.1")
    text = TemplateRenderer().component_config(e, G, ["10.0.0.4:8888", "10.0.0.5:8888"])
    assert "port_value: 8000" in text
    assert "port_value: 9901" in text
    assert text.count("socket_address: { address: 10.0.0.") == 2
    assert "address: 10.0.0.5, port_value: 8888" in text
    assert e.exec_start(G) == "/usr/local/bin/envoy -c /etc/seaweed/envoy-8000.yaml"
