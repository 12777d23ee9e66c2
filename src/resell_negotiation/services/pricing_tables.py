"""Deterministic lookup tables behind the advisor's fallback path."""

from ..domain.models import ItemCategory, ItemCondition

FALLBACK_CONFIDENCE = 0.6
EXTRACTED_CONFIDENCE = 0.5

BASE_PRICES = {
    ItemCategory.TEXTBOOKS: 60.0,
    ItemCategory.ELECTRONICS: 200.0,
    ItemCategory.CLOTHING: 25.0,
    ItemCategory.FURNITURE: 80.0,
    ItemCategory.SPORTS: 40.0,
    ItemCategory.TICKETS: 50.0,
    ItemCategory.DORM: 30.0,
    ItemCategory.TECH_GEAR: 120.0,
    ItemCategory.OTHER: 30.0,
}

CONDITION_MULTIPLIERS = {
    ItemCondition.NEW: 0.90,
    ItemCondition.LIKE_NEW: 0.80,
    ItemCondition.GOOD: 0.70,
    ItemCondition.FAIR: 0.50,
    ItemCondition.POOR: 0.30,
}

# category -> (average price, (min, max), demand level, seasonal trends, recommendations, popular items)
MARKET_TABLE = {
    ItemCategory.TEXTBOOKS: (
        55.0,
        (15.0, 150.0),
        "high",
        "Demand peaks in the first two weeks of each semester and drops sharply after midterms.",
        [
            "List textbooks before the semester starts",
            "Include the edition and ISBN in the title",
            "Bundle course materials for the same class",
        ],
        ["Calculus textbooks", "Chemistry lab manuals", "Access codes"],
    ),
    ItemCategory.ELECTRONICS: (
        180.0,
        (40.0, 800.0),
        "high",
        "Steady year-round, with spikes at the start of the fall semester and around holidays.",
        [
            "Show the item powered on in photos",
            "Mention battery health and included accessories",
            "Offer to test the device at the meet-up",
        ],
        ["Laptops", "Headphones", "Gaming consoles"],
    ),
    ItemCategory.CLOTHING: (
        25.0,
        (5.0, 120.0),
        "medium",
        "Game-day apparel sells best in early fall; outerwear moves in late fall.",
        [
            "List sizes and measurements clearly",
            "Photograph items on a plain background",
            "Price team apparel higher before home games",
        ],
        ["Game-day shirts", "Jackets", "Sneakers"],
    ),
    ItemCategory.FURNITURE: (
        75.0,
        (15.0, 300.0),
        "medium",
        "Move-in weeks bring the most buyers; move-out weeks bring the most competing listings.",
        [
            "Include dimensions in the description",
            "Note whether you can help with pickup",
            "Lower prices during move-out week to sell quickly",
        ],
        ["Desks", "Futons", "Bookshelves"],
    ),
    ItemCategory.SPORTS: (
        45.0,
        (10.0, 250.0),
        "medium",
        "Outdoor gear sells in spring; fitness equipment sells in January.",
        [
            "Mention brand and size for all equipment",
            "Show any wear honestly in photos",
            "Bundle accessories with the main item",
        ],
        ["Bikes", "Intramural gear", "Weights"],
    ),
    ItemCategory.TICKETS: (
        50.0,
        (10.0, 200.0),
        "high",
        "Football season drives demand; prices climb in the week before rivalry games.",
        [
            "Transfer tickets only through official channels",
            "List section and row details",
            "Adjust price as the event approaches",
        ],
        ["Football tickets", "Concert tickets", "Basketball tickets"],
    ),
    ItemCategory.DORM: (
        30.0,
        (5.0, 120.0),
        "high",
        "Strong in August and January as students move in.",
        [
            "Bundle small items into move-in kits",
            "List before move-in weekend",
            "Mention residence hall compatibility",
        ],
        ["Mini fridges", "Microwaves", "Storage bins"],
    ),
    ItemCategory.TECH_GEAR: (
        110.0,
        (20.0, 600.0),
        "medium",
        "Picks up at the start of each semester and before finals.",
        [
            "Include model numbers and specifications",
            "Mention compatibility with common devices",
            "Keep original packaging if you have it",
        ],
        ["Calculators", "Monitors", "Chargers"],
    ),
    ItemCategory.OTHER: (
        30.0,
        (5.0, 150.0),
        "low",
        "Demand varies with the item; listings near semester start get the most views.",
        [
            "Write a detailed description",
            "Use clear, well-lit photos",
            "Research similar listings before pricing",
        ],
        ["Decor", "Kitchenware", "Musical instruments"],
    ),
}

SAFETY_TIPS = {
    "selling": [
        "Meet in public campus locations like the student union or library",
        "Verify the buyer's student status",
        "Use secure payment methods with verification",
        "Take photos of the item condition before meeting",
        "Bring a friend to high-value transactions",
    ],
    "buying": [
        "Inspect items thoroughly before payment",
        "Meet in well-lit, populated campus areas",
        "Verify the seller's student status and reviews",
        "Test electronics before purchasing",
        "Trust your instincts; if something feels wrong, walk away",
    ],
}

CANNED_REPLIES = {
    "safety": (
        "Stay safe: meet in busy campus spots like the student union or library, inspect "
        "items before paying, use payment methods with buyer protection, and bring a friend "
        "for expensive items."
    ),
    "price": (
        "For pricing, check similar listings in the same category and adjust for condition. "
        "Items in like-new condition usually sell for about 80% of retail, good condition "
        "around 70%. Leave a little room for negotiation."
    ),
    "sell": (
        "To sell faster, use bright clear photos, write an honest description with "
        "dimensions or specs, price competitively, and reply to messages quickly."
    ),
    "buy": (
        "When buying, compare a few listings first, ask about condition and history, "
        "make a reasonable offer, and inspect the item in person before paying."
    ),
}

CAPABILITY_MENU = (
    "I can help you with:\n"
    "- Pricing your items\n"
    "- Tips for selling faster\n"
    "- Advice for buying smart\n"
    "- Staying safe during meet-ups\n"
    "Ask me about any of these!"
)
