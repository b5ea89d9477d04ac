import json
import os
import random
import sys
import unittest
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from cli import backup_db, export_sets, restore_db
from db import RoutineRepository, SetRepository, UserRepository
from seed_sample_data import seed

class EveryDayRandom(random.Random):
    """Never skips a day and always adds the evening session."""

    def random(self):
        return 0.9


class CLIToolsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_cli.db"
        self.yaml_path = "test_cli.yaml"
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        if os.path.exists(self.yaml_path):
            os.remove(self.yaml_path)
        self.user_id = seed(self.db_path, self.yaml_path, rng=EveryDayRandom(7))

    def tearDown(self) -> None:
        for path in [self.db_path, self.yaml_path, "backup.db", "exports"]:
            if os.path.exists(path):
                if os.path.isdir(path):
                    for f in os.listdir(path):
                        os.remove(os.path.join(path, f))
                    os.rmdir(path)
                else:
                    os.remove(path)

    def test_seed_creates_dev_data(self) -> None:
        user = UserRepository(self.db_path).fetch(self.user_id)
        self.assertEqual(user["email"], "test@example.com")
        self.assertEqual(user["provider"], "dev")
        routines = RoutineRepository(self.db_path).fetch_all_routines(self.user_id)
        self.assertEqual([r[1] for r in routines], ["Morning Workout", "Evening Stretch"])
        sets = SetRepository(self.db_path).fetch_history(self.user_id)
        self.assertTrue(sets)
        names = {r[7] for r in sets}
        self.assertEqual(
            names, {"Push-ups", "Squats", "Plank", "Pull-ups", "Lunges", "Stretching"}
        )
        stretching = [r for r in sets if r[7] == "Stretching"]
        self.assertEqual(len(stretching), 14)
        self.assertTrue(all(r[6] == "Evening Stretch" for r in stretching))

    def test_seed_is_idempotent(self) -> None:
        before = len(SetRepository(self.db_path).fetch_history(self.user_id))
        self.assertEqual(seed(self.db_path, self.yaml_path), self.user_id)
        after = len(SetRepository(self.db_path).fetch_history(self.user_id))
        self.assertEqual(before, after)

    def test_export_backup_restore(self) -> None:
        os.makedirs("exports", exist_ok=True)
        path = export_sets(self.db_path, "test@example.com", "json", "exports")
        self.assertEqual(path, os.path.join("exports", f"sets_{self.user_id}.json"))
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        self.assertTrue(all(entry["reps"] >= 0 for entry in data))
        csv_path = export_sets(self.db_path, "test@example.com", "csv", "exports")
        self.assertTrue(os.path.exists(csv_path))
        with self.assertRaises(SystemExit):
            export_sets(self.db_path, "nobody@example.com", "csv", "exports")

        backup_db(self.db_path, "backup.db")
        self.assertTrue(os.path.exists("backup.db"))
        os.remove(self.db_path)
        restore_db("backup.db", self.db_path)
        routines = RoutineRepository(self.db_path).fetch_all_routines(self.user_id)
        self.assertEqual(len(routines), 2)
        with self.assertRaises(SystemExit):
            restore_db("missing.db", self.db_path)

if __name__ == "__main__":
    unittest.main()
