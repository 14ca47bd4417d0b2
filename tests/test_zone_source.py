import io

from scanner_module.zone_source import text_domains, zonefile_domains

ZONE = """\
example.com. 3600 IN NS ns1.example.com.
host.example.com. 3600 IN A 192.0.2.10
"""


def test_zone_skips_ns_apex():
    assert zonefile_domains(io.StringIO(ZONE)) == ["host.example.com"]


def test_zone_lists_each_name_once_in_file_order():
    zone = """\
$ORIGIN example.net.
$TTL 300
www     IN A     192.0.2.1
mail    IN A     192.0.2.2
mail    IN AAAA  2001:db8::2
www     IN AAAA  2001:db8::1
@       IN NS    ns1.example.net.
@       IN MX    10 mail.example.net.
"""
    assert zonefile_domains(io.StringIO(zone)) == ["www.example.net", "mail.example.net", "example.net"]


def test_text_domains():
    lines = io.StringIO("example.org\n\n  example.com. \n\t\nexample.net")
    assert text_domains(lines) == ["example.org", "example.com", "example.net"]
