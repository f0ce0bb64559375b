import os

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from openpyxl import load_workbook

from game.models import Clue, Hunt, Treasure


class Command(BaseCommand):
    help = (
        "Import a treasure hunt from an XLSX file.\n"
        "Row 1: title | description | starting clue\n"
        "Next rows: ordinal | treasure label | clue text"
    )

    def add_arguments(self, parser):
        parser.add_argument("xlsx_path", type=str, help="Path of the XLSX file to import")

    def handle(self, *args, **options):
        path = options["xlsx_path"]
        if not os.path.isfile(path):
            raise CommandError(f"File not found: {path}")

        wb = load_workbook(path, read_only=True, data_only=True)
        try:
            hunt, count = self._import(wb.active)
        finally:
            wb.close()
        self.stdout.write(self.style.SUCCESS(f"Hunt created: {hunt.title} ({count} treasures)"))

    def _import(self, sheet):
        def normalized_row(cells):
            values = list(cells)
            values += [None] * (3 - len(values))
            return values[:3]

        header = next(sheet.iter_rows(min_row=1, max_row=1, values_only=True), None)
        if not header:
            raise CommandError("Empty file.")
        title, description, start_clue = normalized_row(header)
        if not title:
            raise CommandError("The first row must hold at least the hunt title.")

        with transaction.atomic():
            hunt = Hunt.objects.create(
                title=str(title).strip(),
                description=str(description or "").strip(),
                start_clue=str(start_clue or "").strip(),
            )

            ordinals = []
            next_ordinal = 1
            for row in sheet.iter_rows(min_row=2, values_only=True):
                if not any(row):
                    continue
                ordinal, name, clue_text = normalized_row(row)
                ordinal = int(ordinal) if ordinal else next_ordinal
                clue_text = str(clue_text or "").strip()

                if not clue_text:
                    raise CommandError(f"Invalid row (ordinal {ordinal}): clue text is required.")
                if len(clue_text) > 200:
                    raise CommandError(f"Invalid row (ordinal {ordinal}): clue text exceeds 200 characters.")
                if ordinal in ordinals:
                    raise CommandError(f"Duplicate ordinal {ordinal}.")

                treasure = Treasure.objects.create(hunt=hunt, ordinal=ordinal, name=str(name or "").strip())
                Clue.objects.create(treasure=treasure, text=clue_text)
                ordinals.append(ordinal)
                next_ordinal = max(next_ordinal, ordinal + 1)

            if sorted(ordinals) != list(range(1, len(ordinals) + 1)):
                raise CommandError(f"Ordinals must run from 1 to {len(ordinals)} without gaps.")

        return hunt, len(ordinals)
