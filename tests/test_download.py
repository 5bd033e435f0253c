import pytest
import requests

from breathing_allometry.config import AnalysisConfig
from breathing_allometry.download import DataDownloader, fetch_inputs
from breathing_allometry.exceptions import DataDownloadError


class FakeResponse:
    def __init__(self, content=b'', status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.headers = {}
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


def test_fetch_writes_content(tmp_path):
    session = FakeSession({'http://host/data.csv': FakeResponse(b'a,b\n1,2\n')})
    downloader = DataDownloader(session=session)

    path = downloader.fetch('http://host/data.csv', tmp_path / 'raw' / 'data.csv')

    assert path.read_bytes() == b'a,b\n1,2\n'
    assert 'User-Agent' in session.headers


def test_fetch_uses_cache_unless_refresh(tmp_path):
    destination = tmp_path / 'data.csv'
    destination.write_text('cached')
    session = FakeSession({'http://host/data.csv': FakeResponse(b'fresh')})
    downloader = DataDownloader(session=session)

    downloader.fetch('http://host/data.csv', destination)
    assert destination.read_text() == 'cached'
    assert session.requested == []

    downloader.fetch('http://host/data.csv', destination, refresh=True)
    assert destination.read_text() == 'fresh'


@pytest.mark.parametrize("response", [
    FakeResponse(status_code=404),
    requests.ConnectionError("unreachable"),
    FakeResponse(b''),
])
def test_fetch_failures_raise(tmp_path, response):
    downloader = DataDownloader(session=FakeSession({'http://host/x': response}))
    with pytest.raises(DataDownloadError):
        downloader.fetch('http://host/x', tmp_path / 'x')
    assert not (tmp_path / 'x').exists()


def test_fetch_inputs_downloads_both(tmp_path):
    config = AnalysisConfig(output_root=tmp_path, data_url='http://host/d.csv',
                            supplement_url='http://host/s.xlsx')
    session = FakeSession({'http://host/d.csv': FakeResponse(b'csv'),
                           'http://host/s.xlsx': FakeResponse(b'xlsx')})

    data_path, supplement_path = fetch_inputs(config, downloader=DataDownloader(session=session))

    assert data_path == config.data_path
    assert supplement_path == config.supplement_path
    assert data_path.read_bytes() == b'csv'
    assert supplement_path.read_bytes() == b'xlsx'


def test_fetch_inputs_falls_back_to_local_files(tmp_path):
    config = AnalysisConfig(output_root=tmp_path)
    config.raw_dir.mkdir(parents=True)
    config.data_path.write_text('csv')
    config.supplement_path.write_bytes(b'xlsx')
    session = FakeSession({})

    paths = fetch_inputs(config, downloader=DataDownloader(session=session))

    assert paths == (config.data_path, config.supplement_path)
    assert session.requested == []


def test_fetch_inputs_without_url_or_file(tmp_path):
    config = AnalysisConfig(output_root=tmp_path)
    with pytest.raises(DataDownloadError, match="No URL configured"):
        fetch_inputs(config, downloader=DataDownloader(session=FakeSession({})))


def test_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv('BREATHING_DATA_URL', 'http://env/data.csv')
    monkeypatch.setenv('BREATHING_OUTPUT_DIR', str(tmp_path))
    monkeypatch.delenv('BREATHING_SUPPLEMENT_URL', raising=False)

    config = AnalysisConfig.from_env(seed=7, supplement_url=None)

    assert config.data_url == 'http://env/data.csv'
    assert config.supplement_url is None
    assert config.seed == 7
    assert config.cleaned_path == tmp_path / 'data' / 'processed' / 'cleaned_breathing_data.csv'
