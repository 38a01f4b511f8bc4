import pytest
from conftest import FakeRunner

from shipyard.analyzer.result import AnalysisResult, PackageManager, ProjectType
from shipyard.errors import ConfigurationError
from shipyard.nginx import NginxConfigurator, proxy_shape, render_combined, render_proxy, render_static


def _analysis(kind, **fields):
    return AnalysisResult(type=kind, package_manager=PackageManager.NPM, path="/ws", **fields)


def _multi(frontend_ssr=False, with_backend=True, with_frontend=True):
    res = _analysis(ProjectType.MULTI_PACKAGE)
    if with_frontend:
        res.frontend_path = "apps/web"
        res.frontend = _analysis(ProjectType.FRONTEND, is_ssr=frontend_ssr, static_output_dir=None if frontend_ssr else "dist")
    if with_backend:
        res.backend_path = "apps/api"
        res.backend = _analysis(ProjectType.BACKEND)
    return res


def test_proxy_at_root_is_a_single_location():
    text = render_proxy("api.local", 3000, "/")
    assert "server_name api.local;" in text
    assert "location / {" in text
    assert "proxy_pass http://localhost:3000/;" in text
    assert "location =" not in text
    assert "proxy_read_timeout 60s;" in text
    assert "proxy_set_header Upgrade $http_upgrade;" in text


def test_proxy_under_base_path_redirects_bare_prefix():
    text = render_proxy("api.local", 4000, "/api")
    assert "location = /api {" in text
    assert "return 301 /api/;" in text
    assert "location /api/ {" in text
    assert "proxy_pass http://localhost:4000/;" in text


def test_static_at_root():
    text = render_static("web.local", "/var/apps/web/dist")
    assert "root /var/apps/web/dist;" in text
    assert "try_files $uri $uri/ /index.html;" in text
    assert "gzip on;" in text
    assert 'add_header Cache-Control "public, immutable";' in text
    assert "expires 1y;" in text


def test_static_under_base_path_uses_alias():
    text = render_static("web.local", "/var/apps/web/dist", "/app")
    assert "alias /var/apps/web/dist/;" in text
    assert "try_files $uri $uri/ /app/index.html;" in text


def test_combined_defaults_api_prefix():
    text = render_combined("shop.local", 5000, "/var/apps/shop/apps/web/dist", "/")
    assert "location /api/ {" in text
    assert "proxy_pass http://localhost:5000/;" in text
    assert "root /var/apps/shop/apps/web/dist;" in text


def test_shapes():
    assert proxy_shape(ProjectType.BACKEND, _analysis(ProjectType.BACKEND)) == "proxy"
    assert proxy_shape(ProjectType.FRONTEND, _analysis(ProjectType.FRONTEND)) == "static"
    assert proxy_shape(ProjectType.FRONTEND, _analysis(ProjectType.FRONTEND, is_ssr=True)) == "proxy"
    assert proxy_shape(ProjectType.MULTI_PACKAGE, _multi()) == "combined"
    assert proxy_shape(ProjectType.MULTI_PACKAGE, _multi(with_frontend=False)) == "proxy"
    assert proxy_shape(ProjectType.MULTI_PACKAGE, _multi(with_backend=False)) == "static"
    assert proxy_shape(ProjectType.MULTI_PACKAGE, _multi(frontend_ssr=True, with_backend=False)) == "proxy"


def test_ssr_frontend_next_to_backend_is_rejected():
    with pytest.raises(ConfigurationError):
        proxy_shape(ProjectType.MULTI_PACKAGE, _multi(frontend_ssr=True))


def test_unknown_type_cannot_be_routed():
    with pytest.raises(ConfigurationError):
        proxy_shape(ProjectType.UNKNOWN, _analysis(ProjectType.UNKNOWN))


def test_generate_writes_static_config(tmp_path):
    runner = FakeRunner()
    nginx = NginxConfigurator(runner, conf_dir=tmp_path / "conf.d", use_sudo=False)
    analysis = _analysis(ProjectType.FRONTEND, static_output_dir="build")

    path = nginx.generate("Web App", "/var/apps/web-app", ProjectType.FRONTEND, analysis)

    assert path == str(tmp_path / "conf.d" / "web-app.conf")
    text = (tmp_path / "conf.d" / "web-app.conf").read_text()
    assert "server_name web-app.local;" in text
    assert "root /var/apps/web-app/build;" in text
    assert runner.ran("-t")


def test_generate_combined_serves_frontend_sub_path(tmp_path):
    nginx = NginxConfigurator(FakeRunner(), conf_dir=tmp_path, use_sudo=False)
    path = nginx.generate("shop", "/var/apps/shop", ProjectType.MULTI_PACKAGE, _multi(), port=5000, domain="shop.example.com")

    text = open(path).read()
    assert "server_name shop.example.com;" in text
    assert "root /var/apps/shop/apps/web/dist;" in text
    assert "location /api/ {" in text


def test_missing_port_writes_nothing(tmp_path):
    nginx = NginxConfigurator(FakeRunner(), conf_dir=tmp_path, use_sudo=False)
    with pytest.raises(ConfigurationError):
        nginx.generate("api", "/var/apps/api", ProjectType.BACKEND, _analysis(ProjectType.BACKEND))
    assert not (tmp_path / "api.conf").exists()


def test_failed_syntax_check_keeps_config(tmp_path):
    runner = FakeRunner().on("-t", returncode=1, stderr="emerg")
    nginx = NginxConfigurator(runner, conf_dir=tmp_path, use_sudo=False)

    path = nginx.generate("api", "/var/apps/api", ProjectType.BACKEND, _analysis(ProjectType.BACKEND), port=3000)
    assert (tmp_path / "api.conf").exists()
    assert path.endswith("api.conf")
    assert nginx.validate() is False


def test_sudo_install_copies_temp_file(tmp_path):
    runner = FakeRunner()
    nginx = NginxConfigurator(runner, conf_dir=tmp_path, use_sudo=True)
    nginx.generate("api", "/var/apps/api", ProjectType.BACKEND, _analysis(ProjectType.BACKEND), port=3000, validate=False)

    copy = runner.commands[0]
    assert copy[:2] == ["sudo", "cp"]
    assert copy[-1] == str(tmp_path / "api.conf")


def test_reload_falls_back_to_plain():
    runner = FakeRunner().on("sudo", "reload", returncode=1)
    nginx = NginxConfigurator(runner, conf_dir="/etc/nginx/conf.d", use_sudo=True)
    assert nginx.reload() is True
    assert len(runner.commands) == 2
    assert runner.commands[1][0] != "sudo"


def test_reload_failure_is_not_raised():
    runner = FakeRunner().on("reload", returncode=1)
    nginx = NginxConfigurator(runner, conf_dir="/etc/nginx/conf.d", use_sudo=True)
    assert nginx.reload() is False


def test_remove_deletes_config(tmp_path):
    conf = tmp_path / "api.conf"
    conf.write_text("server {}")
    NginxConfigurator(FakeRunner(), conf_dir=tmp_path, use_sudo=False).remove(str(conf))
    assert not conf.exists()
