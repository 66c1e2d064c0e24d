"""
Wikidata adapter (free): author biographies over SPARQL.

Only facts Wikidata states explicitly are returned. Missing properties
stay None; nothing is inferred from names, titles or places.

Properties:
    P569 birth date     P570 death date    P27 citizenship
    P21  gender         P19  birth place   P18 image
    P214 VIAF           P213 ISNI          P648 Open Library ID
    P2963 Goodreads author ID
"""
import logging
import re
from typing import Any, Dict, Optional

from constants import PROVIDER_TYPE_FREE
from providers.base import BaseProvider
from providers.capabilities import AuthorBiography, AuthorBiographyProvider
from utils.normalize import parse_year

logger = logging.getLogger(__name__)

WIKIDATA_SPARQL_ENDPOINT = "https://query.wikidata.org/sparql"

_AUTHOR_QUERY = """
SELECT ?author ?authorLabel ?authorDescription ?birth ?death
       ?citizenshipLabel ?genderLabel ?birthPlaceLabel ?image
       ?viaf ?isni ?openlibrary ?goodreads
WHERE {{
  ?author rdfs:label "{name}"@en ;
          wdt:P31 wd:Q5 ;
          wdt:P106 ?occupation .
  VALUES ?occupation {{ wd:Q36180 wd:Q6625963 wd:Q49757 wd:Q482980 }}
  OPTIONAL {{ ?author wdt:P569 ?birth . }}
  OPTIONAL {{ ?author wdt:P570 ?death . }}
  OPTIONAL {{ ?author wdt:P27 ?citizenship . }}
  OPTIONAL {{ ?author wdt:P21 ?gender . }}
  OPTIONAL {{ ?author wdt:P19 ?birthPlace . }}
  OPTIONAL {{ ?author wdt:P18 ?image . }}
  OPTIONAL {{ ?author wdt:P214 ?viaf . }}
  OPTIONAL {{ ?author wdt:P213 ?isni . }}
  OPTIONAL {{ ?author wdt:P648 ?openlibrary . }}
  OPTIONAL {{ ?author wdt:P2963 ?goodreads . }}
  SERVICE wikibase:label {{ bd:serviceParam wikibase:language "en". }}
}}
LIMIT 1
"""


def sanitize_sparql_literal(value: str) -> str:
    """Strip characters that could break out of a quoted SPARQL literal."""
    return re.sub(r'["\\\n\r{}<>]', '', value).strip()


def _value(binding: Dict[str, Any], name: str) -> Optional[str]:
    entry = binding.get(name)
    return entry.get('value') if entry else None


class WikidataProvider(BaseProvider, AuthorBiographyProvider):
    NAME = "wikidata"
    PROVIDER_TYPE = PROVIDER_TYPE_FREE

    def fetch_author_bio(self, name: str) -> Optional[AuthorBiography]:
        safe_name = sanitize_sparql_literal(name or '')
        if not safe_name:
            return None

        data = self.http.get_json(
            WIKIDATA_SPARQL_ENDPOINT,
            params={'query': _AUTHOR_QUERY.format(name=safe_name), 'format': 'json'},
            headers={'Accept': 'application/sparql-results+json'},
        )
        bindings = ((data or {}).get('results') or {}).get('bindings') or []
        if not bindings:
            logger.debug(f"No Wikidata author found for {name!r}")
            return None
        return self._to_biography(name, bindings[0])

    def _to_biography(self, name: str, binding: Dict[str, Any]) -> AuthorBiography:
        qid = (_value(binding, 'author') or '').rsplit('/', 1)[-1] or None
        external_ids = {
            'wikidata_id': qid,
            'viaf_id': _value(binding, 'viaf'),
            'isni': _value(binding, 'isni'),
            'openlibrary_author_id': _value(binding, 'openlibrary'),
            'goodreads_author_ids': [_value(binding, 'goodreads')] if _value(binding, 'goodreads') else None,
        }
        return AuthorBiography(
            name=name,
            source=self.NAME,
            bio=_value(binding, 'authorDescription'),
            birth_year=parse_year(_value(binding, 'birth')),
            death_year=parse_year(_value(binding, 'death')),
            nationality=_value(binding, 'citizenshipLabel'),
            gender=_value(binding, 'genderLabel'),
            birth_place=_value(binding, 'birthPlaceLabel'),
            photo_url=_value(binding, 'image'),
            external_ids={k: v for k, v in external_ids.items() if v},
        )
