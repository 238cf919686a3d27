import socket

import pytest

from google_sheets_mcp.errors import NoAvailablePort
from google_sheets_mcp.ports import find_available_port


def _listen(port):
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", port))
    s.listen(1)
    return s


class TestFindAvailablePort:
    def test_returns_start_when_free(self, free_port):
        assert find_available_port(free_port, 0) == free_port

    def test_skips_port_in_use(self, free_port):
        busy = _listen(free_port)
        try:
            port = find_available_port(free_port, 5)
        finally:
            busy.close()
        assert free_port < port <= free_port + 5

    def test_all_ports_in_use(self, free_port):
        busy = _listen(free_port)
        try:
            with pytest.raises(NoAvailablePort) as exc:
                find_available_port(free_port, 0)
        finally:
            busy.close()
        assert exc.value.start == free_port
        assert exc.value.end == free_port
        assert str(free_port) in str(exc.value)

    @pytest.mark.parametrize("start,width", [(0, 5), (-1, 5), (3000, -1)])
    def test_rejects_invalid_range(self, start, width):
        with pytest.raises(ValueError):
            find_available_port(start, width)
