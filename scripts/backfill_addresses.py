# Script that backfills missing start/end addresses on drives
from argparse import ArgumentParser
import logging
import sys

from drive_addresses.backfill import AddressResolver, BackfillCoordinator, ALL_PHASES
from drive_addresses.db.db import duckdb_connection
from drive_addresses.geocoding import DuckDBRecordStore, NominatimGeocoder, Phase, rate_limiter_for
from drive_addresses.settings import settings
from drive_addresses.utils.errors import FatalStoreError

from pathlib import Path

logger = logging.getLogger('backfill_addresses')

PHASES = {
    'all': ALL_PHASES,
    'ensure': (Phase.ENSURE,),
    'relink': (Phase.RELINK,),
}


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(description='Reverse geocode drive endpoints and relink drives to addresses')
    parser.add_argument('--phase', '-p', choices=sorted(PHASES), default='all')
    parser.add_argument('--db-path', '-d', type=Path, default=settings.ddb_path)
    parser.add_argument('--log-level', '-l', default=settings.log_level)
    parser.add_argument('--log-file', type=Path, default=settings.log_file)
    parser.add_argument('--no-progress', action='store_true')
    parser.add_argument('--unique-coordinates', '-u', action='store_true', default=settings.unique_coordinates)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=str(args.log_file) if args.log_file else None,
    )

    geocoder = NominatimGeocoder(
        base_url=settings.nominatim_url,
        user_agent=settings.nominatim_user_agent,
        email=settings.nominatim_email,
        timeout=settings.request_timeout_s,
        rate_limiter=rate_limiter_for(settings.requests_per_second),
        max_retries=settings.max_retries,
        retry_delay_s=settings.retry_delay_s,
        zoom=settings.nominatim_zoom,
        accept_language=settings.accept_language,
        proxy=settings.nominatim_proxy,
    )

    try:
        with duckdb_connection(args.db_path) as con:
            store = DuckDBRecordStore(con, unique_coordinates=args.unique_coordinates)
            logger.info(f"Before backfill: {store.get_summary()}")

            coordinator = BackfillCoordinator(
                store,
                resolver=AddressResolver(store, geocoder),
                progress=not args.no_progress,
            )
            summary = coordinator.run(phases=PHASES[args.phase])

            logger.info(f"After backfill: {store.get_summary()}")
    except FatalStoreError as e:
        logger.error(e.summary(detail=f"db={args.db_path}"))
        return 1
    finally:
        geocoder.close()

    logger.info(
        f"Resolved {summary.resolved} ({summary.cached} cached, {summary.created} created), "
        f"linked {summary.linked}, skipped {summary.skipped}"
    )
    skips = summary.skips_frame()
    if not skips.empty:
        logger.info(f"Skipped items:\n{skips.to_string(index=False)}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
