"""Country CIDR sources: ipdeny zone files and the DB-IP country-lite MMDB"""

import http.client
import ipaddress
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .config import CONFIG
from .errors import FetchFailed

logger = logging.getLogger(__name__)


class Fetcher(Protocol):
    def fetch(self, country: str) -> list[str]:
        ...


def parse_zone(text: str, country: str) -> list[str]:
    """IPv4 networks from a one-CIDR-per-line document, first occurrence kept."""
    networks: list[str] = []
    seen: set[str] = set()
    skipped = 0

    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if not line:
            continue
        try:
            network = ipaddress.ip_network(line, strict=False)
        except ValueError:
            skipped += 1
            continue
        if network.version != 4:
            skipped += 1
            continue
        cidr = str(network)
        if cidr not in seen:
            seen.add(cidr)
            networks.append(cidr)

    if skipped:
        logger.warning(f"{country}: skipped {skipped} unusable lines")
    return networks


@dataclass
class ZoneFetcher:
    """Downloads ``<cc>.zone`` lists from ipdeny.com."""

    url_template: str = CONFIG["ZONE_URL"]
    timeout: float = CONFIG["FETCH_TIMEOUT"]
    opener: object = urllib.request.urlopen

    def url_for(self, country: str) -> str:
        return self.url_template.format(country=country.lower())

    def fetch(self, country: str) -> list[str]:
        url = self.url_for(country)
        logger.info(f"Downloading IP list for {country}: {url}")

        req = urllib.request.Request(url, headers={"User-Agent": "country-block"})
        try:
            with self.opener(req, timeout=self.timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as e:
            raise FetchFailed(country, f"HTTP {e.code} from {url}") from e
        except urllib.error.URLError as e:
            raise FetchFailed(country, f"cannot reach {url}: {e.reason}") from e
        except http.client.HTTPException as e:
            raise FetchFailed(country, f"bad HTTP response from {url}: {e!r}") from e
        except (TimeoutError, OSError) as e:
            raise FetchFailed(country, f"download from {url} failed: {e}") from e

        if not body:
            raise FetchFailed(country, f"empty response from {url}")

        networks = parse_zone(body.decode("utf-8", "ignore"), country)
        if not networks:
            raise FetchFailed(country, f"no usable networks in response from {url}")

        logger.info(f"{country}: {len(networks):,} networks downloaded")
        return networks


@dataclass
class MmdbFetcher:
    """Reads IPv4 networks per country out of a local DB-IP country-lite MMDB file."""

    mmdb_file: str | Path = CONFIG["MMDB_FILE"]

    def fetch(self, country: str) -> list[str]:
        import maxminddb

        country = country.upper()
        if not Path(self.mmdb_file).exists():
            raise FetchFailed(country, f"MMDB file not found: {self.mmdb_file}")

        networks: list[str] = []
        try:
            with maxminddb.open_database(str(self.mmdb_file)) as reader:
                for network, data in reader:
                    if network.version != 4 or not data:
                        continue
                    iso_code = data.get("country", {}).get("iso_code")
                    if iso_code == country:
                        networks.append(str(network))
        except (OSError, maxminddb.InvalidDatabaseError) as e:
            raise FetchFailed(country, f"cannot read {self.mmdb_file}: {e}") from e

        if not networks:
            raise FetchFailed(country, f"no networks for {country} in {self.mmdb_file}")

        logger.info(f"{country}: {len(networks):,} networks read from {self.mmdb_file}")
        return networks
