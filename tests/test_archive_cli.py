import zipfile

import pytest

import page_ripper as pr


def test_zip_archive_writes_text_and_binary_entries(tmp_path):
    archive = pr.ZipArchive(tmp_path / "out" / "site_source.zip")
    archive.add("index.html", "<p>caf\xe9</p>")
    archive.add("images/a.png", b"\x89PNG")
    archive.add("images/a.png", b"second")

    path = archive.finalize()

    assert path.exists()
    assert not path.with_name(path.name + ".tmp").exists()
    with zipfile.ZipFile(path) as zf:
        assert sorted(zf.namelist()) == ["images/a.png", "index.html"]
        assert zf.read("index.html").decode("utf-8") == "<p>caf\xe9</p>"
        assert zf.read("images/a.png") == b"second"
        assert zf.getinfo("index.html").compress_type == zipfile.ZIP_DEFLATED


def test_zip_archive_finalize_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    archive = pr.ZipArchive(blocker / "site_source.zip")
    archive.add("index.html", "x")
    with pytest.raises(pr.ArchiveFinalizeError):
        archive.finalize()


@pytest.mark.parametrize(
    "url,name",
    [
        ("https://example.com/a/b", "example_com_source.zip"),
        ("http://my-site.co.uk:8080/", "my_site_co_uk_source.zip"),
    ],
)
def test_archive_name_for(url, name):
    assert pr.archive_name_for(url) == name


def test_parse_args_defaults():
    args = pr.parse_args(["https://example.com"])
    settings = pr.settings_from_args(args)
    assert settings.concurrency == 5
    assert settings.timeout == 15.0
    assert settings.relays == list(pr.DEFAULT_RELAYS)
    assert settings.output_dir == "."


def test_direct_relay_goes_first():
    args = pr.parse_args(["https://example.com", "out", "--direct", "--concurrency", "0"])
    settings = pr.settings_from_args(args)
    assert settings.relays[0] == pr.DIRECT_RELAY
    assert settings.relays[1:] == list(pr.DEFAULT_RELAYS)
    assert settings.concurrency == 1
    assert settings.output_dir == "out"


def test_toml_config_supplies_defaults(tmp_path):
    cfg = tmp_path / "ripper.toml"
    cfg.write_text(
        'verbose = true\n'
        '[network]\ntimeout = 30.0\nconcurrency = 8\n'
        '[relay]\nrelays = ["https://relay.test/?{url}"]\n'
        '[output]\noutput_dir = "archives"\n'
    )
    args = pr.parse_args(["--config", str(cfg), "https://example.com", "--concurrency", "2"])
    settings = pr.settings_from_args(args)
    assert args.verbose is True
    assert settings.timeout == 30.0
    assert settings.concurrency == 2
    assert settings.relays == ["https://relay.test/?{url}"]
    assert settings.output_dir == "archives"


def test_yaml_config(tmp_path):
    cfg = tmp_path / "ripper.yaml"
    cfg.write_text("general:\n  concurrency: 3\n  direct: true\n")
    settings = pr.settings_from_args(pr.parse_args(["--config", str(cfg), "https://example.com"]))
    assert settings.concurrency == 3
    assert settings.relays[0] == pr.DIRECT_RELAY


def test_unsupported_config_format(tmp_path):
    cfg = tmp_path / "ripper.ini"
    cfg.write_text("[x]")
    with pytest.raises(RuntimeError):
        pr.load_config_file(str(cfg))


def test_main_rejects_invalid_url(capsys):
    with pytest.raises(SystemExit) as exc:
        pr.main(["not a url"])
    assert exc.value.code == 2
    assert "Invalid URL" in capsys.readouterr().out


def test_logging_reporter_uses_success_level(caplog):
    reporter = pr.LoggingReporter()
    entry = pr.LogEntry(id="1", timestamp=0.0, message="saved", level=pr.LogLevel.SUCCESS)
    with caplog.at_level("INFO"):
        reporter.log(entry)
    assert caplog.records[-1].levelname == "SUCCESS"
    assert caplog.records[-1].getMessage() == "saved"


def test_scalar_relay_in_config_is_one_template(tmp_path):
    cfg = tmp_path / "ripper.yaml"
    cfg.write_text('relays: "https://relay.test/?{url}"\n')
    settings = pr.settings_from_args(pr.parse_args(["--config", str(cfg), "https://example.com"]))
    assert settings.relays == ["https://relay.test/?{url}"]


def test_command_line_relays_replace_configured_ones(tmp_path):
    cfg = tmp_path / "ripper.toml"
    cfg.write_text('[relay]\nrelays = ["https://a.test/?{url}", "https://b.test/?{url}"]\n')
    args = pr.parse_args(
        ["--config", str(cfg), "https://example.com", "--relay", "https://c.test/?{url}"]
    )
    assert pr.settings_from_args(args).relays == ["https://c.test/?{url}"]


def test_user_agent_from_cli_and_config(tmp_path):
    args = pr.parse_args(["https://example.com", "--user-agent", "ripper/1.0"])
    headers = pr.settings_from_args(args).headers
    assert headers["User-Agent"] == "ripper/1.0"
    assert headers["Accept"] == pr.DEFAULT_HEADERS["Accept"]

    cfg = tmp_path / "ripper.toml"
    cfg.write_text('[network]\nuser_agent = "cfg-agent"\n')
    args = pr.parse_args(["--config", str(cfg), "https://example.com"])
    assert pr.settings_from_args(args).headers["User-Agent"] == "cfg-agent"
    assert pr.Settings().headers["User-Agent"] == pr.DEFAULT_HEADERS["User-Agent"]


def test_main_rejects_bad_relay_template(capsys):
    with pytest.raises(SystemExit) as exc:
        pr.main(["https://example.com", "--relay", "https://x.test/?{}"])
    assert exc.value.code == 2
    assert "relay template" in capsys.readouterr().out
