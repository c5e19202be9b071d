"""
Parsing layer for extracting restaurants and availability from each platform.
Every parser is a pure function of the HTML it is given.
"""
import re
import json
import logging
from typing import Dict, Any, List, Optional, Tuple
from bs4 import BeautifulSoup, Tag

from .models import AvailabilityEntry, AvailabilityStatus, RestaurantCandidate
from .normalize import dedupe_records, parse_score

logger = logging.getLogger(__name__)

OMAKASE_BASE = "https://omakase.in"
TABLEALL_BASE = "https://www.tableall.com"
TABLECHECK_BASE = "https://www.tablecheck.com"

MONTH_ABBREVS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}

IMAGE_ATTRS = ['data-lazy', 'data-original', 'data-src', 'src']
DATE_IN_TEXT_RE = re.compile(r'(\d{4})[/\-](\d{2})[/\-](\d{2})')
JP_PHONE_RE = re.compile(r'(?:\+?81|0)\d[\d\s\-().]{7,14}\d')
TABELOG_URL_RE = re.compile(r'(?:s\.)?tabelog\.com/(?:[a-z]{2}/)?([^/]+)/A(\d+)/A(\d+)/(\d+)/')


def extract_json_ld(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    """Extract JSON-LD structured data"""
    json_ld_data = []
    for script in soup.find_all('script', type='application/ld+json'):
        try:
            data = json.loads(script.string)
            if isinstance(data, list):
                json_ld_data.extend(data)
            else:
                json_ld_data.append(data)
        except (json.JSONDecodeError, AttributeError, TypeError):
            continue
    return json_ld_data


def safe_text(element: Optional[Tag], default: str = "") -> str:
    """Safely extract text from BeautifulSoup element"""
    if element is None:
        return default
    text = element.get_text(strip=True) if hasattr(element, 'get_text') else str(element)
    return text.strip() if text else default


def safe_attr(element: Optional[Tag], attr: str, default: str = "") -> str:
    """Safely extract attribute from BeautifulSoup element"""
    if element is None:
        return default
    value = element.get(attr, default)
    if isinstance(value, list):
        value = " ".join(value)
    return str(value).strip() if value else default


def _usable_image(url: str) -> bool:
    return bool(url) and url.startswith('http') and 'no_image' not in url


def _style_background_url(style: str) -> Optional[str]:
    match = re.search(r'url\(([^)]+)\)', style or "")
    if not match:
        return None
    return match.group(1).replace('"', '').replace("'", '').strip() or None


def _first_image(item: Tag, selectors: List[str]) -> Optional[str]:
    for selector in selectors:
        img = item.select_one(selector)
        if img is None:
            continue
        for attr in IMAGE_ATTRS:
            value = safe_attr(img, attr)
            if _usable_image(value):
                return value
    return None


def has_rel_next(html: str) -> bool:
    soup = BeautifulSoup(html, 'lxml')
    return soup.select_one('a[rel="next"], link[rel="next"]') is not None


def extract_phones(html: str) -> List[str]:
    """Phone numbers on a page: JSON-LD telephone first, else Japanese number patterns"""
    soup = BeautifulSoup(html, 'lxml')
    for block in extract_json_ld(soup):
        if isinstance(block, dict):
            phone = block.get('telephone') or block.get('phone')
            if phone:
                return [str(phone)]

    phones: List[str] = []
    for match in JP_PHONE_RE.findall(html):
        if match not in phones:
            phones.append(match)
    return phones


# ---------------------------------------------------------------------------
# Tabelog
# ---------------------------------------------------------------------------

def _tabelog_price(item: Tag) -> Optional[str]:
    prices = [safe_text(el) for el in item.select('.list-rst__budget')]
    prices = [p for p in prices if p]

    if not prices:
        # Ranked-list layout with separate dinner/lunch ratings
        for rating in item.select('.c-rating-v3.list-rst__info-item'):
            value = safe_text(rating.select_one('.c-rating-v3__val'))
            if not value or value == '-':
                continue
            if rating.select_one('.c-rating-v3__time--dinner'):
                prices.append(f"Dinner: {value}")
            elif rating.select_one('.c-rating-v3__time--lunch'):
                prices.append(f"Lunch: {value}")
            else:
                prices.append(value)

    return " / ".join(prices) or None


def _tabelog_image(item: Tag) -> Optional[str]:
    bg = item.select_one('div.js-cassette-img[data-original]')
    if bg is not None:
        value = safe_attr(bg, 'data-original')
        if _usable_image(value):
            return value
    return _first_image(item, [
        '.list-rst__rst-photo img',
        '.list-rst__photo img',
        '.list-rst__img img',
        'img.js-cassette-img',
    ])


def _visit_time_slots(item: Tag) -> List[str]:
    slots: List[str] = []
    for link in item.select('a[href*="booking/form_course"]'):
        match = re.search(r'visit_time=(\d{4})', safe_attr(link, 'href'))
        if match:
            t = match.group(1)
            formatted = f"{t[:2]}:{t[2:]}"
            if formatted not in slots:
                slots.append(formatted)
    return sorted(slots)


def parse_tabelog_list(html: str, city: str, filter_date: Optional[str] = None) -> Tuple[List[RestaurantCandidate], bool]:
    """
    Parse a Tabelog restaurant list page.

    Args:
        html: Page HTML
        city: City the list was requested for
        filter_date: ISO date when the list was requested with a vacancy filter

    Returns:
        (restaurants, has_next_page)
    """
    soup = BeautifulSoup(html, 'lxml')
    records: List[Dict[str, Any]] = []

    for item in soup.select('.list-rst'):
        name_el = item.select_one('.list-rst__rst-name-target')
        name = safe_text(name_el)
        if not name:
            continue
        url = safe_attr(name_el, 'href') or None

        score = parse_score(safe_text(item.select_one('.c-rating__val, .list-rst__rating-val')))

        area = cuisine = None
        area_genre = safe_text(item.select_one('.list-rst__area-genre'))
        if area_genre:
            parts = [p.strip() for p in area_genre.split('/')]
            area = parts[0] or None
            cuisine = parts[1] if len(parts) > 1 and parts[1] else None

        reservation_url = None
        yoyaku = item.select_one('a[href*="yoyaku.tabelog.com"]')
        has_online_reservation = yoyaku is not None
        if yoyaku is not None:
            reservation_url = safe_attr(yoyaku, 'href') or None
        elif re.search(r'Online Booking|ネット予約', str(item), re.IGNORECASE):
            has_online_reservation = True

        time_slots = _visit_time_slots(item) if filter_date else []

        records.append({
            'name': name,
            'url': url,
            'score': score,
            'area': area,
            'cuisine': cuisine,
            'price_range': _tabelog_price(item),
            'image_url': _tabelog_image(item),
            'time_slots': time_slots,
            # A vacancy-filtered list only contains bookable restaurants
            'has_online_reservation': True if filter_date else has_online_reservation,
            'reservation_url': reservation_url,
        })

    restaurants = []
    for record in dedupe_records(records):
        candidate = RestaurantCandidate(
            name=record['name'],
            platform='tabelog',
            url=record['url'],
            platform_links={'tabelog': record['url']},
            score=record['score'],
            cuisine=record['cuisine'],
            area=record['area'],
            city=city,
            price_range=record['price_range'],
            image_url=record['image_url'],
            extras={
                'has_online_reservation': record['has_online_reservation'],
                'reservation_url': record['reservation_url'],
            },
        )
        if filter_date:
            candidate.availability.append(AvailabilityEntry(
                date=filter_date,
                status=AvailabilityStatus.AVAILABLE,
                time_slots=record['time_slots'],
            ))
        restaurants.append(candidate)

    has_next_page = soup.select_one('a.c-pagination__arrow--next') is not None
    return restaurants, has_next_page


def parse_tabelog_score(html: str) -> Optional[float]:
    """Score from a Tabelog restaurant page"""
    soup = BeautifulSoup(html, 'lxml')
    return parse_score(safe_text(soup.select_one('.rdheader-rating__score-val-dtl, .c-rating__val')))


def parse_tabelog_detail(html: str, url: str) -> Dict[str, Any]:
    """
    Parse a Tabelog restaurant page

    Returns:
        Dictionary with extracted fields
    """
    soup = BeautifulSoup(html, 'lxml')

    structured: Dict[str, Any] = {}
    for block in extract_json_ld(soup):
        if isinstance(block, dict) and block.get('@type') == 'Restaurant':
            structured = block
            break

    score = None
    for selector in ['.rdheader-rating__score-val-dtl', '.rdheader-rating__score-val', '.c-rating__val']:
        score = parse_score(safe_text(soup.select_one(selector)))
        if score is not None:
            break

    name = str(structured['name']) if structured.get('name') else None
    name_ja = None
    heading = safe_text(soup.select_one('.rdheader-rstname'))
    if heading:
        if not name:
            name = heading
        elif heading != name:
            name_ja = heading
    if not name:
        title = safe_text(soup.find('title'))
        if title:
            name = re.split(r'[–\-|]', title)[0].strip() or None

    address = None
    city = None
    addr = structured.get('address')
    if isinstance(addr, dict):
        address = addr.get('streetAddress') or ", ".join(
            p for p in [addr.get('addressLocality'), addr.get('addressRegion')] if p
        ) or None
        city = addr.get('addressLocality')

    image_url = None
    image = structured.get('image')
    if isinstance(image, str):
        image_url = image
    elif isinstance(image, list) and image:
        first = image[0]
        image_url = first if isinstance(first, str) else (first or {}).get('url')
    elif isinstance(image, dict):
        image_url = image.get('url')
    if not image_url:
        for selector in ['.rstdtl-top-photo img', '.rdheader-photo img', '.js-imagebox-main img', '.rstdtl-photo img']:
            src = safe_attr(soup.select_one(selector), 'src')
            if _usable_image(src):
                image_url = src
                break

    phone = str(structured['telephone']) if structured.get('telephone') else None

    return {
        'name': name,
        'name_ja': name_ja,
        'tabelog_url': url,
        'score': score,
        'cuisine': str(structured['servesCuisine']) if structured.get('servesCuisine') else None,
        'city': city,
        'address': address,
        'phone': phone,
        'price_range': str(structured['priceRange']) if structured.get('priceRange') else None,
        'image_url': image_url,
    }


def has_tabelog_booking(html: str) -> bool:
    """Whether a restaurant page embeds Tabelog's own booking widget"""
    return 'booking-calendar' in html or 'rstdtl-side-yoyaku__booking' in html


def find_yoyaku_links(html: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Returns:
        (first reservation link, first link that is an actual booking page)
    """
    soup = BeautifulSoup(html, 'lxml')
    reservation_url = None
    for link in soup.select('a[href*="yoyaku.tabelog.com"]'):
        href = safe_attr(link, 'href')
        if not href:
            continue
        if reservation_url is None:
            reservation_url = href
        if 'send_remind' not in href and 'faq' not in href and 'cid=' not in href:
            return reservation_url, href
    return reservation_url, None


def _cell_status(text: str, classes: str) -> AvailabilityStatus:
    if ('◯' in text or '○' in text
            or any(c in classes for c in ('available', 'open', 'vacancy'))):
        return AvailabilityStatus.AVAILABLE
    if '△' in text or 'limited' in classes or 'few' in classes:
        return AvailabilityStatus.LIMITED
    if ('✕' in text or '×' in text or '−' in text
            or any(c in classes for c in ('closed', 'full', 'soldout', 'disable'))):
        return AvailabilityStatus.UNAVAILABLE
    return AvailabilityStatus.UNKNOWN


def _cell_date(cell: Tag) -> Optional[str]:
    for link in cell.find_all('a'):
        match = DATE_IN_TEXT_RE.search(safe_attr(link, 'href'))
        if match:
            return "-".join(match.groups())
    for attr in ('data-date', 'data-day'):
        match = DATE_IN_TEXT_RE.search(safe_attr(cell, attr))
        if match:
            return "-".join(match.groups())
    return None


def parse_booking_calendar(html: str, max_cells: int = 90) -> List[AvailabilityEntry]:
    """
    Read a booking calendar: each dated cell marked with a status symbol or class.
    Cells without a date or a recognisable status are left out.
    """
    soup = BeautifulSoup(html, 'lxml')
    entries: Dict[str, AvailabilityEntry] = {}

    for cell in soup.find_all('td')[:max_cells]:
        day = _cell_date(cell)
        if not day:
            continue
        status = _cell_status(safe_text(cell), safe_attr(cell, 'class').lower())
        if status == AvailabilityStatus.UNKNOWN:
            continue
        if day not in entries:
            entries[day] = AvailabilityEntry(date=day, status=status)

    return [entries[d] for d in sorted(entries)]


def canonical_tabelog_url(link: str) -> Optional[str]:
    """English canonical URL for any Tabelog restaurant link (mobile, localized)"""
    match = TABELOG_URL_RE.search(link or "")
    if not match:
        return None
    prefecture, area1, area2, restaurant_id = match.groups()
    return f"https://tabelog.com/en/{prefecture}/A{area1}/A{area2}/{restaurant_id}/"


def to_japanese_tabelog_url(url: str) -> str:
    return url.replace('tabelog.com/en/', 'tabelog.com/')


# ---------------------------------------------------------------------------
# Omakase
# ---------------------------------------------------------------------------

def _omakase_date_columns(table: Tag, year: int) -> List[str]:
    columns: List[str] = []
    first_row = table.find('tr')
    if first_row is None:
        return columns

    current_year = year
    prev_month = 0
    for th in first_row.find_all('th'):
        match = re.search(r'([A-Za-z]+)\s+(\d+)', th.get_text(" ", strip=True))
        if not match:
            continue
        month = MONTH_ABBREVS.get(match.group(1).lower()[:3])
        if not month:
            continue
        day = int(match.group(2))
        # Dec -> Jan rollover
        if prev_month and month < prev_month:
            current_year += 1
        prev_month = month
        columns.append(f"{current_year}-{month:02d}-{day:02d}")
    return columns


def parse_omakase_page(html: str, year: int) -> List[RestaurantCandidate]:
    """
    Parse an Omakase premium search page.

    Each card carries an availability grid whose header row holds dates
    ("Feb 19 Thu") and whose body rows are lunch (sun icon) and dinner
    (moon icon).
    """
    soup = BeautifulSoup(html, 'lxml')
    restaurants: List[RestaurantCandidate] = []

    for card in soup.select('div.c-rItem_advanced'):
        link = safe_attr(card.select_one('a[href*="/en/r/"]'), 'href')
        id_match = re.search(r'/en/r/([a-z0-9]+)', link)
        if not id_match:
            continue
        omakase_id = id_match.group(1)
        url = link if link.startswith('http') else f"{OMAKASE_BASE}{link}"

        name = safe_text(card.select_one('h4.ui.header'))
        if not name:
            continue

        detail = safe_text(card.select_one('.c-rItem_advanced_detail > span'))
        parts = [p.strip() for p in detail.split('/')] if detail else []
        cuisine = parts[0] if parts and parts[0] else None
        area = parts[1] if len(parts) > 1 and parts[1] else None

        image_url = _style_background_url(safe_attr(card.select_one('.c-rItem_advanced_img div[style]'), 'style'))

        table = card.select_one('.c-restaurant_item_date table')
        if table is None:
            continue
        columns = _omakase_date_columns(table, year)
        if not columns:
            continue

        meals_by_date: Dict[str, List[str]] = {}
        for row in table.find_all('tr')[1:]:
            cells = row.find_all('td')
            if not cells:
                continue
            if cells[0].select_one('.fa-sun'):
                meal = 'lunch'
            elif cells[0].select_one('.fa-moon'):
                meal = 'dinner'
            else:
                continue
            for column, cell in zip(columns, cells[1:]):
                if cell.select_one('.c-rItem_advanced_avlbl'):
                    meals_by_date.setdefault(column, []).append(meal)

        candidate = RestaurantCandidate(
            name=name,
            platform='omakase',
            url=url,
            platform_links={'omakase': url},
            cuisine=cuisine,
            area=area,
            image_url=image_url,
            extras={'omakase_id': omakase_id, 'available_meals': meals_by_date},
        )
        for column in columns:
            status = AvailabilityStatus.AVAILABLE if column in meals_by_date else AvailabilityStatus.UNAVAILABLE
            candidate.add_availability(AvailabilityEntry(date=column, status=status,
                                                         meal_types=meals_by_date.get(column, [])))
        restaurants.append(candidate)

    return restaurants


def omakase_has_next_page(html: str, page: int) -> bool:
    soup = BeautifulSoup(html, 'lxml')
    return any(
        f"page={page + 1}" in safe_attr(a, 'href')
        for a in soup.select('div.ui.pagination.menu a.item')
    )


# ---------------------------------------------------------------------------
# TableAll
# ---------------------------------------------------------------------------

def _tableall_id(img_src: str) -> Optional[str]:
    match = re.search(r'restaurant/(\d+)/', img_src or "")
    return match.group(1) if match else None


def parse_tableall_page(html: str, date_from: str, date_to: str) -> List[RestaurantCandidate]:
    """
    Parse TableAll's opening search page: a restaurant list (.rst-item) plus a
    per-date calendar (.slide-item) of bookable slots.
    """
    soup = BeautifulSoup(html, 'lxml')

    meta: Dict[str, Dict[str, Any]] = {}
    for item in soup.select('.rst-item'):
        name = safe_text(item.select_one('.rst-name'))
        img = safe_attr(item.find('img'), 'src')
        restaurant_id = _tableall_id(img)
        if not restaurant_id or not name or restaurant_id in meta:
            continue
        price_match = re.search(r'￥[\d,]+', safe_text(item.select_one('.rst-info-icons')))
        meta[restaurant_id] = {
            'name': name,
            'price_range': f"{price_match.group(0)} ~" if price_match else None,
            'image_url': img or None,
        }

    dates_by_id: Dict[str, List[str]] = {}
    genre_by_id: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
    for slide in soup.select('div.slide-item'):
        try:
            month = int(safe_text(slide.select_one('.cal-head-month')))
            year = int(safe_text(slide.select_one('.cal-head-year')))
            day = int(safe_text(slide.select_one('.cal-head-day')))
        except ValueError:
            continue
        date_str = f"{year}-{month:02d}-{day:02d}"
        if date_str < date_from or date_str > date_to:
            continue

        for item in slide.select('.cal-item'):
            if 'sold' in (item.get('class') or []):
                continue
            restaurant_id = _tableall_id(safe_attr(item.find('img'), 'src'))
            if not restaurant_id:
                continue
            dates = dates_by_id.setdefault(restaurant_id, [])
            if date_str not in dates:
                dates.append(date_str)
            if restaurant_id not in genre_by_id:
                parts = [p.strip() for p in safe_text(item.select_one('.cal-item-genre')).split(',')]
                genre_by_id[restaurant_id] = (
                    parts[0] or None,
                    parts[1] if len(parts) > 1 and parts[1] else None,
                )

    restaurants = []
    for restaurant_id, dates in dates_by_id.items():
        info = meta.get(restaurant_id, {})
        cuisine, area = genre_by_id.get(restaurant_id, (None, None))
        url = f"{TABLEALL_BASE}/restaurant/{restaurant_id}"
        candidate = RestaurantCandidate(
            name=info.get('name') or cuisine or f"Restaurant {restaurant_id}",
            platform='tableall',
            url=url,
            platform_links={'tableall': url},
            cuisine=cuisine,
            area=area,
            price_range=info.get('price_range'),
            image_url=info.get('image_url') or (
                f"https://d267qvt8mf7rfa.cloudfront.net/restaurant/{restaurant_id}/searchResultImage-thumb300x200.jpg"
            ),
            extras={'tableall_id': restaurant_id},
        )
        for date_str in sorted(dates):
            candidate.add_availability(AvailabilityEntry(date=date_str, status=AvailabilityStatus.AVAILABLE))
        restaurants.append(candidate)

    return restaurants


# ---------------------------------------------------------------------------
# TableCheck
# ---------------------------------------------------------------------------

def format_tablecheck_price(dinner: Optional[str], lunch: Optional[str]) -> Optional[str]:
    def yen(value: str) -> Optional[str]:
        try:
            return f"¥{round(float(value)):,}"
        except (TypeError, ValueError):
            return None

    dinner_text = yen(dinner) if dinner else None
    lunch_text = yen(lunch) if lunch else None
    if dinner_text and lunch_text:
        return f"{dinner_text} / {lunch_text} lunch"
    if dinner_text:
        return dinner_text
    if lunch_text:
        return f"{lunch_text} lunch"
    return None


def parse_tablecheck_page(html: str, date: str) -> List[RestaurantCandidate]:
    """Parse a TableCheck availability search page for one date"""
    soup = BeautifulSoup(html, 'lxml')
    restaurants: List[RestaurantCandidate] = []
    seen = set()

    for card in soup.select('[data-testid="Explore Venue Card"]'):
        slug = safe_attr(card, 'data-slug')
        name = safe_text(card.select_one('[data-testid="Common Venue Card Header"]'))
        if not slug or not name or slug in seen:
            continue
        seen.add(slug)

        dinner = safe_attr(card.select_one('[data-testid="Common Venue Card Budget Dinner"] [data-price]'), 'data-price')
        lunch = safe_attr(card.select_one('[data-testid="Common Venue Card Budget Lunch"] [data-price]'), 'data-price')
        slots = [
            safe_text(btn) for btn in card.select('[data-testid="Common Venue Card Time Slot Btn"] button')
        ]
        slots = sorted({s for s in slots if s})

        url = f"{TABLECHECK_BASE}/en/{slug}/reserve"
        candidate = RestaurantCandidate(
            name=name,
            platform='tablecheck',
            url=url,
            platform_links={'tablecheck': url},
            cuisine=safe_text(card.select_one('[data-testid="Common Venue Card Displayed Cuisine"]')) or None,
            price_range=format_tablecheck_price(dinner, lunch),
            image_url=safe_attr(card.find('img'), 'src') or None,
            extras={'slug': slug},
        )
        candidate.add_availability(AvailabilityEntry(
            date=date, status=AvailabilityStatus.AVAILABLE, time_slots=slots,
        ))
        restaurants.append(candidate)

    return restaurants
