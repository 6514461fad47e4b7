import argparse
import json
import logging
import math
import os
import sys
import time

import requests

from config import (
    API_BASE_URL, TRAILS_ENDPOINT, API_TIMEOUT, API_MAX_RETRIES, API_RETRY_DELAY,
)
from map_surface import StyleSurface
from trail_geometry import CanonicalCollection, normalize
from trail_overlay import TrailOverlay

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(log_file=None, verbose=False):
    """Log to stderr (stdout carries the style JSON) and optionally to a file."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


class AdminTrailLoader:
    """Loads trail records from the admin API and turns them into a map overlay."""

    def __init__(self, base_url=API_BASE_URL, token=None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.records = []
        self.collection = None
        self.timeout = API_TIMEOUT
        self.max_retries = API_MAX_RETRIES
        self.retry_delay = API_RETRY_DELAY

    def build_headers(self):
        """Request headers, with a bearer token when one is configured."""
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def fetch_records(self, endpoint=TRAILS_ENDPOINT):
        """Fetch trail records with retry logic. Returns True on success."""
        url = f"{self.base_url}{endpoint}"
        logger.info(f"Fetching trail records from {url}")

        for attempt in range(self.max_retries):
            try:
                logger.info(f"Attempt {attempt + 1}/{self.max_retries}")
                response = requests.get(url, headers=self.build_headers(), timeout=self.timeout)

                if response.status_code == 200:
                    try:
                        payload = response.json()
                    except ValueError as e:
                        logger.error(f"Admin API returned invalid JSON: {e}")
                        return False
                    return self._accept_records(payload)
                elif response.status_code == 401:
                    logger.error("Unauthorized: check the admin token")
                    return False
                elif response.status_code == 429:
                    logger.warning("Rate limited by admin API, retrying...")
                    time.sleep(self.retry_delay * (attempt + 1))
                else:
                    logger.error(f"Error fetching trails: {response.status_code} {self._error_detail(response)}")

            except requests.exceptions.Timeout:
                logger.warning(f"Request timeout on attempt {attempt + 1}, retrying...")
                time.sleep(self.retry_delay)
            except requests.exceptions.RequestException as e:
                logger.error(f"Network error: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay)

        logger.error("Failed to fetch trail records after all retries")
        return False

    @staticmethod
    def _error_detail(response):
        try:
            return response.json().get('detail', '')
        except (ValueError, AttributeError):
            return ''

    def load_records_file(self, file_path):
        """Load trail records from a JSON file holding a list of records."""
        if not os.path.exists(file_path):
            logger.error(f"File not found: {file_path}")
            return False

        try:
            logger.info(f"Loading trail records from {file_path}")
            with open(file_path) as f:
                payload = json.load(f)
        except (IOError, json.JSONDecodeError) as e:
            logger.error(f"Error reading trail records: {e}")
            return False
        return self._accept_records(payload)

    def _accept_records(self, payload):
        if not isinstance(payload, list):
            logger.error(f"Expected a list of trail records, got {type(payload).__name__}")
            return False
        self.records = payload
        logger.info(f"Loaded {len(self.records)} trail records")
        return True

    def build_collection(self) -> CanonicalCollection:
        """Normalize the loaded records into the canonical collection."""
        self.collection = normalize(self.records)
        if self.collection:
            logger.info(f"{len(self.records)} trails • {len(self.collection)} with geometry")
        else:
            logger.info("No trail geometry data available")
        return self.collection

    def render_overlay(self, surface=None, overlay=None):
        """Present the collection on a surface and return its style document."""
        if self.collection is None:
            self.build_collection()
        surface = surface if surface is not None else StyleSurface()
        overlay = overlay if overlay is not None else TrailOverlay()
        overlay.present(surface, self.collection)
        return surface.to_style()

    @staticmethod
    def _haversine_km(lat1, lon1, lat2, lon2):
        """Return the great-circle distance in km between two points."""
        R = 6371.0  # Earth radius in km
        dlat = math.radians(lat2 - lat1)
        dlon = math.radians(lon2 - lon1)
        a = (math.sin(dlat / 2) ** 2 +
             math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
             math.sin(dlon / 2) ** 2)
        return R * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    def _line_length_km(self, coords):
        """Length of a [lon, lat] coordinate run in kilometres."""
        return sum(
            self._haversine_km(coords[i][1], coords[i][0],
                               coords[i + 1][1], coords[i + 1][0])
            for i in range(len(coords) - 1)
        )

    def _feature_length_km(self, feature):
        geometry = feature.geometry
        if geometry['type'] == 'LineString':
            return self._line_length_km(geometry['coordinates'])
        if geometry['type'] == 'MultiLineString':
            return sum(self._line_length_km(line) for line in geometry['coordinates'])
        return 0.0

    def get_statistics(self):
        """Return statistics about the loaded trails."""
        if self.collection is None:
            self.build_collection()

        geometry_types = {}
        total_length_km = 0.0
        for feature in self.collection:
            gtype = feature.geometry_type
            geometry_types[gtype] = geometry_types.get(gtype, 0) + 1
            try:
                total_length_km += self._feature_length_km(feature)
            except (TypeError, IndexError) as e:
                logger.debug(f"Skipping length of trail {feature.id!r}: {e}")

        return {
            'total_trails': len(self.records),
            'with_geometry': len(self.collection),
            'geometry_types': geometry_types,
            'total_length_km': round(total_length_km, 2),
        }


def main():
    parser = argparse.ArgumentParser(
        description='Load admin trail records and emit the trail map overlay style',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python admin_trails.py --token "$ADMIN_TOKEN"
  python admin_trails.py --url https://api.example.com --token "$ADMIN_TOKEN" --stats
  python admin_trails.py --file trails.json > overlay_style.json
        """
    )

    parser.add_argument('--url', type=str, default=API_BASE_URL, help='Admin API base URL')
    parser.add_argument('--token', type=str, default=os.environ.get('ADMIN_TOKEN'),
                        help='Bearer token for the admin API (default: $ADMIN_TOKEN)')
    parser.add_argument('--file', type=str, help='Read trail records from a JSON file instead of the API')
    parser.add_argument('--stats', action='store_true', help='Log statistics about the loaded trails')
    parser.add_argument('--log-file', type=str, help='Also write log output to this file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args()
    configure_logging(args.log_file, args.verbose)

    loader = AdminTrailLoader(base_url=args.url, token=args.token)

    if args.file:
        if not loader.load_records_file(args.file):
            return False
    elif not loader.fetch_records():
        return False

    loader.build_collection()
    style = loader.render_overlay()
    json.dump(style, sys.stdout, indent=2)
    sys.stdout.write('\n')

    if args.stats:
        stats = loader.get_statistics()
        logger.info(f"Trail Statistics: {json.dumps(stats, indent=2)}")

    logger.info("Overlay built successfully")
    return True


if __name__ == '__main__':
    success = main()
    sys.exit(0 if success else 1)
