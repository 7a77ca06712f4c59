import json

from django.core.management.base import BaseCommand, CommandError

from playback.catalog import build_clock, load_trips
from playback.services import PlaybackSession, parse_timestamp


class Command(BaseCommand):
    help = "Print the fleet snapshot at a simulated instant without starting playback."

    def add_arguments(self, parser):
        parser.add_argument(
            "--at",
            help="Simulated instant (ISO-8601). Defaults to the start of the playback window.",
        )
        parser.add_argument("--indent", type=int, default=2)

    def handle(self, *args, **options):
        session = PlaybackSession(load_trips(), build_clock())
        try:
            if options["at"]:
                instant = parse_timestamp(options["at"])
                if instant is None:
                    raise CommandError(f"Not a valid timestamp: {options['at']!r}")
                session.clock.seek(instant)
            snapshot = session.snapshot()
        finally:
            session.close()

        self.stdout.write(json.dumps(snapshot, indent=options["indent"] or None))
        if snapshot["data_error"]:
            raise CommandError("No valid trip data found; check PLAYBACK_CONFIG['data_dir'].")
