"""Mock data used to seed a fresh store: agency catalogue, sample reports and demo accounts."""

import random
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from models import Agency, MediaItem, Report, Subscription, User

# Los Angeles area
BASE_LATITUDE = 34.0522
BASE_LONGITUDE = -118.2437

AGENCIES: List[Agency] = [
    Agency(id="1", name="Federal Bureau of Investigation", abbreviation="FBI", color="#0047AB", icon="shield"),
    Agency(id="2", name="Immigration and Customs Enforcement", abbreviation="ICE", color="#003366", icon="globe"),
    Agency(id="3", name="Los Angeles Police Department", abbreviation="LAPD", color="#000080", icon="badge"),
    Agency(id="4", name="Drug Enforcement Administration", abbreviation="DEA", color="#006400", icon="pill"),
    Agency(id="5", name="Border Patrol", abbreviation="CBP", color="#2E8B57", icon="map"),
    Agency(id="6", name="Highway Patrol", abbreviation="CHP", color="#8B4513", icon="car"),
    Agency(id="7", name="Sheriff Department", abbreviation="Sheriff", color="#4B0082", icon="badge-sheriff"),
    Agency(id="8", name="Other Law Enforcement", abbreviation="Other", color="#708090", icon="user-cog"),
]

DESCRIPTIONS = [
    "Two officers patrolling on foot",
    "Unmarked vehicle parked outside building",
    "Multiple vehicles with lights on",
    "Checkpoint set up on main road",
    "Officers questioning people at bus stop",
    "Surveillance van parked for several hours",
    "Agents entering apartment building",
    "Patrol car monitoring traffic",
    "Officers conducting ID checks",
    "Helicopter circling overhead",
]

USERNAMES = ["observer1", "citizen_watch", "community_alert", "eyewitness", "vigilant_user"]

DEMO_PASSWORD = "password"


def get_agency(agency_id: str) -> Optional[Agency]:
    for agency in AGENCIES:
        if agency.id == agency_id:
            return agency
    return None


def _random_media(rng: random.Random) -> List[MediaItem]:
    media: List[MediaItem] = []
    if rng.random() <= 0.6:
        return media
    for _ in range(rng.randint(1, 3)):
        random_id = rng.randint(0, 999)
        if rng.random() > 0.7:
            media.append(MediaItem(uri=f"https://example.com/video-{random_id}.mp4", type="video"))
        else:
            media.append(MediaItem(uri=f"https://picsum.photos/id/{random_id}/400/300", type="image"))
    return media


def generate_mock_reports(
    count: int = 15,
    now: Optional[datetime] = None,
    seed: Optional[int] = None,
) -> List[Report]:
    """
    Generate sample sightings scattered within ~5 miles of downtown Los Angeles.

    Reports are stamped within the last week; roughly 40% carry media and 60%
    are attributed to a user.

    Parameters:
        count: Number of reports to generate.
        now: Reference instant (defaults to the current UTC time).
        seed: Optional seed for reproducible output.

    Returns:
        List[Report]: Reports with ids `report-1` .. `report-<count>`.
    """
    rng = random.Random(seed)
    now = now or datetime.now(timezone.utc)
    reports: List[Report] = []
    for i in range(count):
        has_user = rng.random() > 0.4
        reports.append(
            Report(
                id=f"report-{i + 1}",
                agency_id=str(rng.randint(1, 8)),
                latitude=BASE_LATITUDE + (rng.random() - 0.5) * 0.15,
                longitude=BASE_LONGITUDE + (rng.random() - 0.5) * 0.15,
                description=rng.choice(DESCRIPTIONS),
                timestamp=now - timedelta(milliseconds=rng.randint(0, 86400000 * 7)),
                upvotes=rng.randint(0, 49),
                verified=rng.random() > 0.7,
                media=_random_media(rng),
                user_id=f"user-{i + 1}" if has_user else None,
                username=rng.choice(USERNAMES) if has_user else None,
            )
        )
    return reports


def demo_users(now: Optional[datetime] = None) -> List[User]:
    """Demo accounts: one free user part-way through the month, one monthly subscriber."""
    now = now or datetime.now(timezone.utc)
    return [
        User(
            id="1",
            username="demo",
            email="demo@example.com",
            avatar="https://images.unsplash.com/photo-1535713875002-d1d0cf377fde?auto=format&fit=crop&w=200&q=80",
            created_at=now - timedelta(days=30),
            subscription=Subscription(tier="free", start_date=now - timedelta(days=30)),
            posts_this_month=3,
            auth_provider="email",
        ),
        User(
            id="2",
            username="premium",
            email="premium@example.com",
            avatar="https://images.unsplash.com/photo-1599566150163-29194dcaad36?auto=format&fit=crop&w=200&q=80",
            created_at=now - timedelta(days=60),
            subscription=Subscription(
                tier="monthly",
                start_date=now - timedelta(days=15),
                end_date=now + timedelta(days=15),
                auto_renew=True,
                payment_method="Google Pay",
            ),
            posts_this_month=25,
            auth_provider="email",
        ),
    ]
