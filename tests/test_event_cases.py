import re
from collections import namedtuple
import unittest

from typing import Iterable

from pathlib import Path
import cssevents
import json
import logging
from itertools import islice

from test_cssevents import RecordingSink

logger = logging.getLogger(__name__)

EVENT_CASES_DIR = Path(__file__).parent / "event-cases"

JSONCase = namedtuple("JSONCase", "case, expectation")


def pairs(iterable):
    "s -> (s0,s1), (s2,s3), (s4, s5), ..."
    return zip(
        islice(iterable, 0, None, 2),
        islice(iterable, 1, None, 2),
    )


class EventCaseMeta(type):
    """Metaclass creating one test method per case of a JSON file"""

    @classmethod
    def __prepare__(cls, clsname, bases, **kwargs):
        namespace = dict()

        if not "cases" in kwargs or unittest.TestCase not in bases:
            logger.warning(
                f"Class `{clsname}` should specify cases as initialize argument and must base unittest.TestCase, nothing loaded"
            )
            return namespace

        namespace["cases"] = list(cls.load_cases(kwargs["cases"]))

        for idx, case in enumerate(namespace["cases"]):
            name, fn = cls.create_test(idx, case)
            namespace[name] = fn

        return namespace

    def __new__(cls, name, bases, namespace, **kwargs):
        kwargs.pop("cases", None)  # Already processed in __prepare__
        return super().__new__(cls, name, bases, namespace, **kwargs)

    @classmethod
    def load_cases(cls, name) -> Iterable[JSONCase]:
        json_path = (EVENT_CASES_DIR / name).with_suffix(".json")
        assert json_path.exists(), f"JSON cases file does not exists: {json_path}."
        with json_path.open("rb") as fd:
            raw_cases = json.load(fd)

        return map(JSONCase._make, pairs(raw_cases))

    @staticmethod
    def create_test(idx, case: JSONCase):
        def inner(self):
            self.run_case(case.case, case.expectation)

        case_str = re.sub(r"[^\w]+", "_", case.case.get("comment", "")).strip("_")
        if case_str:
            return f"test_{idx:03}_{case_str}", inner
        else:
            return f"test_{idx:03}", inner


class EventCaseMixin:
    inline = False

    def run_case(self, case, expectation):
        sink = RecordingSink()

        if isinstance(expectation, dict):
            with self.assertRaisesRegex(cssevents.ParseError, expectation["error"]):
                cssevents.parse(case["css"], sink, inline=self.inline)
            self.assertEqual(
                [list(event) for event in sink.events],
                expectation.get("events", []),
            )
        else:
            cssevents.parse(case["css"], sink, inline=self.inline)
            self.assertEqual([list(event) for event in sink.events], expectation)


class StylesheetTestCase(
    EventCaseMixin,
    unittest.TestCase,
    metaclass=EventCaseMeta,
    cases="stylesheets",
):
    pass


class InlineStyleTestCase(
    EventCaseMixin,
    unittest.TestCase,
    metaclass=EventCaseMeta,
    cases="inline_styles",
):
    inline = True
