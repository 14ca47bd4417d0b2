import csv
import io
import json

import pytest
import yaml

import main
from scanner_module.dns_records import INVALID_DOMAIN, Result

RESULTS = [
    Result(domain="example.org", dmarc="v=DMARC1; p=reject;", mx=("mx1.example.org.", "mx2.example.org."), spf="v=spf1 -all"),
    Result(domain="nxdomain.invalid", error=INVALID_DOMAIN),
]


def test_marshal_json_one_object_per_line():
    lines = main.marshal(RESULTS, "json").splitlines()
    assert [json.loads(line) for line in lines] == [r.to_dict() for r in RESULTS]


def test_marshal_jsonp_is_indented():
    text = main.marshal(RESULTS[:1], "jsonp")
    assert "\n\t\"domain\": \"example.org\"" in text
    assert json.loads(text) == RESULTS[0].to_dict()


def test_marshal_csv():
    rows = list(csv.reader(io.StringIO(main.marshal(RESULTS, "csv", header=True))))
    assert rows[0] == ["domain", "bimi", "dkim", "dmarc", "mx", "ns", "spf", "error"]
    assert rows[1] == ["example.org", "", "", "v=DMARC1; p=reject;", "mx1.example.org. mx2.example.org.", "", "v=spf1 -all", ""]
    assert rows[2][-1] == INVALID_DOMAIN

    assert len(list(csv.reader(io.StringIO(main.marshal(RESULTS, "csv"))))) == 2


def test_marshal_yaml():
    docs = list(yaml.safe_load_all(main.marshal(RESULTS, "yaml")))
    assert docs == [r.to_dict() for r in RESULTS]
    assert main.marshal([], "yaml") == ""


def test_result_writer_appends_to_file(tmp_path):
    base = str(tmp_path / "out")
    writer = main.ResultWriter("csv", base)
    writer.write(RESULTS[:1])
    writer.write(RESULTS[1:])
    writer.close()

    assert writer.path == base + ".csv"
    rows = list(csv.reader(open(writer.path, encoding="utf-8")))
    assert len(rows) == 3
    assert rows[0][0] == "domain"


def test_result_writer_jsonp_uses_json_extension(tmp_path):
    writer = main.ResultWriter("jsonp", str(tmp_path / "out"))
    assert writer.path.endswith("out.json")


def test_result_writer_stream():
    stream = io.StringIO()
    main.ResultWriter("json", None, stream=stream).write(RESULTS[:1])
    assert json.loads(stream.getvalue())["domain"] == "example.org"


def test_build_config_precedence(monkeypatch):
    monkeypatch.setenv("DSS_TIMEOUT", "3")
    monkeypatch.setenv("DSS_CONCURRENT", "7")
    monkeypatch.setenv("DSS_NAMESERVERS", "9.9.9.9")
    args = main.build_parser().parse_args(
        ["-c", "2", "--dkim-selector", "s1,s2", "--dkim-selector", "s3", "scan", "example.org"]
    )
    cfg = main.build_config(args).validated()

    assert cfg.concurrency == 2
    assert cfg.timeout == 3.0
    assert cfg.dkim_selectors == ("s1", "s2", "s3")
    assert cfg.nameservers == ("9.9.9.9:53",)


def test_parser_defaults():
    args = main.build_parser().parse_args(["scan"])
    assert args.format == "yaml"
    assert args.output_file is None
    assert args.domains == []
    assert main.build_parser().parse_args(["scan", "-o"]).output_file == ""


def test_zone_flag_with_domains_is_rejected():
    assert main.main(["scan", "-z", "example.org"]) == main.EXIT_CONFIG


def test_invalid_config_exit_code():
    assert main.main(["--dns-buffer", "5000", "scan", "example.org"]) == main.EXIT_CONFIG


def test_run_scan_prints_results(make_scanner, example_org, capsys):
    scanner, _ = make_scanner(example_org)
    args = main.build_parser().parse_args(["scan", "-f", "json", "example.org"])
    assert main.run_scan(args, scanner) == main.EXIT_SUCCESS
    assert json.loads(capsys.readouterr().out)["spf"] == "v=spf1 -all"


def test_run_scan_reads_stdin(make_scanner, example_org, capsys):
    scanner, _ = make_scanner(example_org)
    args = main.build_parser().parse_args(["scan", "-f", "csv"])
    stdin = io.StringIO("example.org\n\nnxdomain.invalid\n")
    main.run_scan(args, scanner, stdin=stdin)

    rows = list(csv.reader(io.StringIO(capsys.readouterr().out)))
    assert [row[0] for row in rows] == ["domain", "example.org", "nxdomain.invalid"]


def test_run_scan_zone(make_scanner, capsys):
    scanner, _ = make_scanner({})
    args = main.build_parser().parse_args(["scan", "-z", "-f", "json"])
    zone = io.StringIO("host.example.com. 3600 IN A 192.0.2.10\n")
    main.run_scan(args, scanner, stdin=zone)
    assert json.loads(capsys.readouterr().out) == {"domain": "host.example.com", "error": INVALID_DOMAIN}


MALFORMED_ZONE = "host.example.com. 3600 IN A not-an-ip\n"


def test_run_scan_malformed_zone(make_scanner, capsys):
    scanner, transport = make_scanner({})
    args = main.build_parser().parse_args(["scan", "-z"])
    assert main.run_scan(args, scanner, stdin=io.StringIO(MALFORMED_ZONE)) == main.EXIT_CONFIG
    assert transport.count() == 0
    assert capsys.readouterr().out == ""


def test_main_malformed_zone_exit_code(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO(MALFORMED_ZONE))
    assert main.main(["scan", "-z"]) == main.EXIT_CONFIG


@pytest.mark.parametrize("fmt", main.FORMATS)
def test_every_format_handles_errors(fmt):
    assert "nxdomain.invalid" in main.marshal(RESULTS[1:], fmt)
